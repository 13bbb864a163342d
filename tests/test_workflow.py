"""Transition engine: tables, ordering, prerequisites, override (pure, no database)."""

import pytest

from proctrack.errors import TransitionError
from proctrack.models import (
    DV,
    AbstractOfQuotations,
    BACResolution,
    Bid,
    Check,
    InspectionReport,
    InspectionStatus,
    NoticeToProceed,
    PMTInspection,
    PostQualification,
    ProcurementCase,
    Quotation,
)
from proctrack.models import CaseState as S
from proctrack.models import ProcurementMethod as M
from proctrack.workflow import (
    STATE_ORDER,
    allowed_next_states,
    assert_can_transition,
    previous_state,
    states_for_method,
)


def make_case(method=M.SMALL_VALUE_RFQ, state=S.DRAFT, **records):
    case = ProcurementCase(title="t", method=method, current_state=state)
    for name, value in records.items():
        setattr(case, name, value)
    return case


def quotations(n):
    return [Quotation(supplier_name=f"S{i}", amount=100 + i) for i in range(n)]


# ─── Paths ──────────────────────────────────────────────────────────────────

class TestPaths:
    def test_small_value_path(self):
        path = states_for_method(M.SMALL_VALUE_RFQ)
        assert path[0] is S.DRAFT
        assert S.RFQ_ISSUED in path and S.ABSTRACT_OF_QUOTATIONS in path
        assert S.BID_OPENING not in path
        assert S.PROGRESS_BILLING not in path
        assert path[-1] is S.CLOSED

    def test_public_bidding_path(self):
        path = states_for_method(M.PUBLIC_BIDDING)
        assert S.RFQ_ISSUED not in path
        assert S.TWG_EVALUATION in path and S.DELIVERY in path
        assert S.PMT_INSPECTION not in path

    def test_infrastructure_replaces_delivery_with_billing(self):
        path = states_for_method(M.INFRASTRUCTURE)
        assert S.PROGRESS_BILLING in path and S.PMT_INSPECTION in path
        assert S.DELIVERY not in path
        assert S.INSPECTION not in path

    def test_paths_follow_global_order(self):
        for method in M:
            orders = [STATE_ORDER[s] for s in states_for_method(method)]
            assert orders == sorted(orders)

    def test_check_may_skip_advice(self):
        case = make_case(state=S.CHECK)
        assert set(allowed_next_states(case)) == {S.CHECK_ADVICE, S.CLOSED}

    def test_closed_is_terminal(self):
        assert allowed_next_states(make_case(state=S.CLOSED)) == ()

    def test_previous_state(self):
        assert previous_state(M.SMALL_VALUE_RFQ, S.ORS) is S.ACCEPTANCE
        assert previous_state(M.INFRASTRUCTURE, S.ACCEPTANCE) is S.PMT_INSPECTION
        assert previous_state(M.SMALL_VALUE_RFQ, S.ABSTRACT_OF_QUOTATIONS) is S.QUOTATION_COLLECTION
        assert previous_state(M.SMALL_VALUE_RFQ, S.DRAFT) is None


# ─── Engine ─────────────────────────────────────────────────────────────────

class TestAssertCanTransition:
    def test_permitted_successor(self):
        result = assert_can_transition(make_case(), S.RFQ_ISSUED)
        assert result.from_state is S.DRAFT
        assert result.to_state is S.RFQ_ISSUED
        assert not result.is_noop and not result.is_override

    def test_same_state_is_noop(self):
        result = assert_can_transition(make_case(state=S.RFQ_ISSUED), "RFQ_ISSUED")
        assert result.is_noop

    def test_skipping_ahead_rejected(self):
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(make_case(), S.AWARD)
        assert "not allowed" in exc.value.reason

    def test_backward_rejected(self):
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(make_case(state=S.CONTRACT), S.RFQ_ISSUED)
        assert exc.value.reason == "backward transition"

    def test_backward_with_override(self):
        result = assert_can_transition(make_case(state=S.CONTRACT), S.RFQ_ISSUED, is_override=True)
        assert result.is_override

    def test_override_skips_successor_and_prerequisites(self):
        result = assert_can_transition(make_case(), S.AWARD, is_override=True)
        assert result.to_state is S.AWARD and result.is_override

    def test_override_cannot_leave_method_path(self):
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(make_case(), S.BID_OPENING, is_override=True)
        assert "SMALL_VALUE_RFQ" in exc.value.reason

    def test_unknown_state(self):
        with pytest.raises(TransitionError):
            assert_can_transition(make_case(), "NOPE")


class TestPrerequisites:
    def test_abstract_needs_minimum_quotations(self):
        case = make_case(state=S.QUOTATION_COLLECTION, quotations=quotations(2))
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(case, S.ABSTRACT_OF_QUOTATIONS)
        assert "at least 3 quotations" in exc.value.reason

        case.quotations.append(Quotation(supplier_name="S3", amount=1))
        assert assert_can_transition(case, S.ABSTRACT_OF_QUOTATIONS).to_state is S.ABSTRACT_OF_QUOTATIONS

    def test_minimum_is_configurable(self):
        case = make_case(state=S.QUOTATION_COLLECTION, quotations=quotations(1))
        assert assert_can_transition(case, S.ABSTRACT_OF_QUOTATIONS, min_quotations=1)

    def test_bac_resolution_small_value_needs_abstract(self):
        case = make_case(state=S.ABSTRACT_OF_QUOTATIONS)
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.BAC_RESOLUTION)
        case.abstract = AbstractOfQuotations()
        assert assert_can_transition(case, S.BAC_RESOLUTION)

    def test_bac_resolution_bidding_needs_passed_post_qualification(self):
        case = make_case(M.PUBLIC_BIDDING, S.POST_QUALIFICATION, post_qualification=PostQualification(passed=False))
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(case, S.BAC_RESOLUTION)
        assert "Post-Qualification" in exc.value.reason
        case.post_qualification.passed = True
        assert assert_can_transition(case, S.BAC_RESOLUTION)

    def test_award_needs_resolution(self):
        case = make_case(state=S.BAC_RESOLUTION)
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.AWARD)
        case.bac_resolution = BACResolution()
        assert assert_can_transition(case, S.AWARD)

    def test_twg_needs_a_bid(self):
        case = make_case(M.PUBLIC_BIDDING, S.BID_OPENING)
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.TWG_EVALUATION)
        case.bids.append(Bid(bidder_name="B", amount=5))
        assert assert_can_transition(case, S.TWG_EVALUATION)

    def test_acceptance_needs_passed_inspection(self):
        case = make_case(state=S.INSPECTION, inspection=InspectionReport(status=InspectionStatus.FAILED))
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.ACCEPTANCE)
        case.inspection.status = InspectionStatus.PASSED
        assert assert_can_transition(case, S.ACCEPTANCE)

    def test_infrastructure_acceptance_needs_pmt_inspection(self):
        case = make_case(M.INFRASTRUCTURE, S.PMT_INSPECTION)
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(case, S.ACCEPTANCE)
        assert "PMT" in exc.value.reason
        case.pmt_inspection = PMTInspection(status=InspectionStatus.PASSED)
        assert assert_can_transition(case, S.ACCEPTANCE)

    def test_infrastructure_billing_needs_ntp(self):
        case = make_case(M.INFRASTRUCTURE, S.NOTICE_TO_PROCEED)
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.PROGRESS_BILLING)
        case.ntp = NoticeToProceed()
        assert assert_can_transition(case, S.PROGRESS_BILLING)

    def test_check_advice_needs_check(self):
        case = make_case(state=S.CHECK)
        with pytest.raises(TransitionError) as exc:
            assert_can_transition(case, S.CHECK_ADVICE)
        assert exc.value.reason == "Check required before Check Advice"

    def test_check_needs_dv(self):
        case = make_case(state=S.DV)
        with pytest.raises(TransitionError):
            assert_can_transition(case, S.CHECK)
        case.dv = DV()
        assert assert_can_transition(case, S.CHECK)

    def test_close_from_check(self):
        case = make_case(state=S.CHECK, check=Check())
        assert assert_can_transition(case, S.CLOSED).to_state is S.CLOSED
