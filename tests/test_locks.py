"""Edit/delete lock policy and role capabilities (pure, no database)."""

from proctrack.locks import NEVER_LOCKED, edit_access, evaluate_lock
from proctrack.models import DV, ORS, AbstractOfQuotations, CaseState, Check, ProcurementCase, ProcurementMethod, Quotation, Role
from proctrack.security import RECORD_TYPES, can_override_transitions, can_perform, required_roles


def make_case(state=CaseState.ORS, **records):
    case = ProcurementCase(title="t", method=ProcurementMethod.SMALL_VALUE_RFQ, current_state=state)
    for name, value in records.items():
        setattr(case, name, value)
    return case


class TestEvaluateLock:
    def test_ors_locked_by_dv(self):
        assert not evaluate_lock("ors", make_case(ors=ORS())).locked
        lock = evaluate_lock("ors", make_case(ors=ORS(), dv=DV()))
        assert lock.locked and lock.reason == "DV already created"

    def test_dv_locked_by_check(self):
        lock = evaluate_lock("dv", make_case(dv=DV(), check=Check()))
        assert lock.locked and lock.reason == "Check already created"

    def test_check_locked_when_closed(self):
        assert not evaluate_lock("check", make_case(CaseState.CHECK, check=Check())).locked
        assert evaluate_lock("check", make_case(CaseState.CLOSED, check=Check())).reason == "Case is closed"

    def test_rfq_and_quotation_locks(self):
        case = make_case(CaseState.QUOTATION_COLLECTION, quotations=[Quotation(supplier_name="A", amount=1)])
        assert evaluate_lock("rfq", case).reason == "Quotations already collected"
        assert not evaluate_lock("quotation", case).locked
        case.abstract = AbstractOfQuotations()
        assert evaluate_lock("quotation", case).reason == "Abstract of Quotations already created"

    def test_unlisted_types_never_lock(self):
        case = make_case(CaseState.CLOSED, ors=ORS(), dv=DV(), check=Check())
        assert "award" in NEVER_LOCKED
        for record_type in NEVER_LOCKED:
            assert not evaluate_lock(record_type, case).locked


class TestEditAccess:
    def test_locked_record_denied_to_owner_role(self):
        access = edit_access(Role.BUDGET_MANAGER, "ors", make_case(ors=ORS(), dv=DV()))
        assert access.locked
        assert not access.can_edit and not access.can_delete
        assert not access.requires_override

    def test_admin_edits_locked_record_via_override(self):
        access = edit_access(Role.ADMIN, "ors", make_case(ors=ORS(), dv=DV()))
        assert access.can_edit and access.can_delete and access.requires_override

    def test_unlocked_follows_capabilities(self):
        access = edit_access(Role.BUDGET_MANAGER, "ors", make_case(ors=ORS()))
        assert access.can_edit and not access.can_delete and not access.requires_override

    def test_viewer_gets_nothing(self):
        access = edit_access(Role.VIEWER, "ors", make_case(ors=ORS()))
        assert not access.can_edit and not access.can_delete

    def test_to_dict(self):
        data = edit_access(Role.ADMIN, "dv", make_case(dv=DV(), check=Check())).to_dict()
        assert data == {
            "locked": True,
            "reason": "Check already created",
            "can_edit": True,
            "can_delete": True,
            "requires_override": True,
        }


class TestCapabilities:
    def test_admin_has_everything(self):
        for record_type in RECORD_TYPES:
            assert can_perform(Role.ADMIN, record_type, "admin_override")
        assert can_override_transitions(Role.ADMIN)

    def test_non_admin_cannot_override(self):
        for role in Role:
            if role is not Role.ADMIN:
                assert not can_override_transitions(role)

    def test_unknown_role_gets_nothing(self):
        assert not can_perform("JANITOR", "ors", "view")
        assert not can_perform(None, "ors", "view")

    def test_create_roles(self):
        assert required_roles("ors") == {Role.BUDGET_MANAGER, Role.ADMIN}
        assert Role.VIEWER not in required_roles("attachment")
        assert required_roles("unknown") == frozenset()
