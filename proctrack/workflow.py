"""
proctrack/workflow.py

Transition engine for procurement cases.

Pure module: no I/O, no session access beyond reading the case's relationships. Callers
(stages.apply_transition) persist the state change and write the activity log entry.

Each procurement method has an explicit transition table. A case may only move to one of
the permitted successors of its current state, and only when the prerequisites for the
target state are met. States are also globally ordered (CaseState declaration order),
which is how backward moves are detected.

Admin override:
- skips the successor and prerequisite checks,
- still requires the target to be on the method's path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .errors import TransitionError
from .models import CaseState, InspectionStatus, ProcurementCase, ProcurementMethod

S = CaseState

STATE_ORDER: Dict[CaseState, int] = {state: index for index, state in enumerate(CaseState)}

# ---------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------
_AWARD_TAIL: Dict[CaseState, Tuple[CaseState, ...]] = {
    S.BAC_RESOLUTION: (S.AWARD,),
    S.AWARD: (S.CONTRACT,),
    S.CONTRACT: (S.NOTICE_TO_PROCEED,),
    S.NOTICE_TO_PROCEED: (S.DELIVERY,),
    S.DELIVERY: (S.INSPECTION,),
    S.INSPECTION: (S.ACCEPTANCE,),
    S.ACCEPTANCE: (S.ORS,),
    S.ORS: (S.DV,),
    S.DV: (S.CHECK,),
    S.CHECK: (S.CHECK_ADVICE, S.CLOSED),
    S.CHECK_ADVICE: (S.CLOSED,),
    S.CLOSED: (),
}

# Bid bulletins and the pre-bid conference are optional for a given case.
_BIDDING_FRONT: Dict[CaseState, Tuple[CaseState, ...]] = {
    S.DRAFT: (S.BID_BULLETIN, S.PRE_BID_CONF, S.BID_OPENING),
    S.BID_BULLETIN: (S.PRE_BID_CONF, S.BID_OPENING),
    S.PRE_BID_CONF: (S.BID_OPENING,),
    S.BID_OPENING: (S.TWG_EVALUATION,),
    S.TWG_EVALUATION: (S.POST_QUALIFICATION,),
    S.POST_QUALIFICATION: (S.BAC_RESOLUTION,),
}

TRANSITIONS: Dict[ProcurementMethod, Dict[CaseState, Tuple[CaseState, ...]]] = {
    ProcurementMethod.SMALL_VALUE_RFQ: {
        S.DRAFT: (S.RFQ_ISSUED,),
        S.RFQ_ISSUED: (S.QUOTATION_COLLECTION, S.ABSTRACT_OF_QUOTATIONS),
        S.QUOTATION_COLLECTION: (S.ABSTRACT_OF_QUOTATIONS,),
        S.ABSTRACT_OF_QUOTATIONS: (S.BAC_RESOLUTION,),
        **_AWARD_TAIL,
    },
    ProcurementMethod.PUBLIC_BIDDING: {
        **_BIDDING_FRONT,
        **_AWARD_TAIL,
    },
    ProcurementMethod.INFRASTRUCTURE: {
        **_BIDDING_FRONT,
        **_AWARD_TAIL,
        S.NOTICE_TO_PROCEED: (S.PROGRESS_BILLING,),
        S.PROGRESS_BILLING: (S.PMT_INSPECTION,),
        S.PMT_INSPECTION: (S.ACCEPTANCE,),
        S.DELIVERY: (),
        S.INSPECTION: (),
    },
}


def _reachable(method: ProcurementMethod) -> List[CaseState]:
    table = TRANSITIONS[method]
    seen = {S.DRAFT}
    frontier = [S.DRAFT]
    while frontier:
        state = frontier.pop()
        for nxt in table.get(state, ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return sorted(seen, key=STATE_ORDER.__getitem__)


_PATHS: Dict[ProcurementMethod, Tuple[CaseState, ...]] = {
    method: tuple(_reachable(method)) for method in ProcurementMethod
}


def states_for_method(method: ProcurementMethod) -> Tuple[CaseState, ...]:
    """All states reachable by `method`, in global lifecycle order."""
    return _PATHS[ProcurementMethod(method)]


def allowed_next_states(case: ProcurementCase) -> Tuple[CaseState, ...]:
    return TRANSITIONS[ProcurementMethod(case.method)].get(CaseState(case.current_state), ())


def previous_state(method: ProcurementMethod, state: CaseState) -> Optional[CaseState]:
    """
    The latest state on the method's path that has `state` as a permitted successor.

    Used to roll a case back when the record that moved it is deleted and no
    transition log entry says where it came from.
    """
    table = TRANSITIONS[ProcurementMethod(method)]
    state = CaseState(state)
    predecessors = [src for src, targets in table.items() if state in targets]
    if not predecessors:
        return None
    return max(predecessors, key=STATE_ORDER.__getitem__)


# ---------------------------------------------------------------------
# Prerequisites
# ---------------------------------------------------------------------
def _is_bidding(case: ProcurementCase) -> bool:
    return ProcurementMethod(case.method) in (ProcurementMethod.PUBLIC_BIDDING, ProcurementMethod.INFRASTRUCTURE)


def _passed(report) -> bool:
    return report is not None and InspectionStatus(report.status) is InspectionStatus.PASSED


def _pq_passed(case: ProcurementCase) -> bool:
    return case.post_qualification is not None and bool(case.post_qualification.passed)


def _check_abstract(case: ProcurementCase, min_quotations: int) -> Optional[str]:
    if len(case.quotations) < min_quotations:
        return f"Need at least {min_quotations} quotations"
    return None


def _check_bac_resolution(case: ProcurementCase, _min: int) -> Optional[str]:
    if _is_bidding(case):
        if not _pq_passed(case):
            return "Passed Post-Qualification required before BAC Resolution"
    elif case.abstract is None:
        return "Abstract of Quotations required before BAC Resolution"
    return None


def _check_award(case: ProcurementCase, _min: int) -> Optional[str]:
    if _is_bidding(case) and not _pq_passed(case):
        return "Passed Post-Qualification required before Award"
    if case.bac_resolution is None:
        return "BAC Resolution required before Award"
    return None


def _check_acceptance(case: ProcurementCase, _min: int) -> Optional[str]:
    if ProcurementMethod(case.method) is ProcurementMethod.INFRASTRUCTURE:
        if not _passed(case.pmt_inspection):
            return "PMT Inspection PASSED required before Acceptance"
    elif not _passed(case.inspection):
        return "Inspection PASSED required before Acceptance"
    return None


def _requires(attr: str, message: str) -> Callable[[ProcurementCase, int], Optional[str]]:
    def check(case: ProcurementCase, _min: int) -> Optional[str]:
        value = getattr(case, attr)
        present = len(value) > 0 if isinstance(value, list) else value is not None
        return None if present else message

    return check


PREREQUISITES: Dict[CaseState, Callable[[ProcurementCase, int], Optional[str]]] = {
    S.ABSTRACT_OF_QUOTATIONS: _check_abstract,
    S.TWG_EVALUATION: _requires("bids", "At least one bid required before TWG evaluation"),
    S.POST_QUALIFICATION: _requires("twg_evaluation", "TWG Evaluation required before Post-Qualification"),
    S.BAC_RESOLUTION: _check_bac_resolution,
    S.AWARD: _check_award,
    S.CONTRACT: _requires("award", "Award is required before Contract Signing"),
    S.NOTICE_TO_PROCEED: _requires("contract", "Contract must be signed before issuing NTP"),
    S.DELIVERY: _requires("ntp", "NTP required before Delivery"),
    S.PROGRESS_BILLING: _requires("ntp", "NTP required before Progress Billing"),
    S.PMT_INSPECTION: _requires("progress_billing", "Progress Billing required before PMT Inspection"),
    S.INSPECTION: _requires("deliveries", "At least one delivery record required before Inspection"),
    S.ACCEPTANCE: _check_acceptance,
    S.ORS: _requires("acceptance", "Acceptance required before ORS"),
    S.DV: _requires("ors", "ORS required before DV"),
    S.CHECK: _requires("dv", "DV required before Check"),
    S.CHECK_ADVICE: _requires("check", "Check required before Check Advice"),
    S.CLOSED: _requires("check", "Check required before closing"),
}


def missing_prerequisite(case: ProcurementCase, target: CaseState, min_quotations: int = 3) -> Optional[str]:
    check = PREREQUISITES.get(CaseState(target))
    return check(case, min_quotations) if check else None


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Transition:
    from_state: CaseState
    to_state: CaseState
    is_noop: bool = False
    is_override: bool = False


def _coerce_state(value) -> CaseState:
    try:
        return CaseState(value)
    except ValueError:
        raise TransitionError(f"Unknown state: {value}") from None


def assert_can_transition(
    case: ProcurementCase,
    target,
    *,
    is_override: bool = False,
    min_quotations: int = 3,
) -> Transition:
    """
    Validate moving `case` to `target` and describe the move.

    Returns a Transition (is_noop=True when the case is already at `target`).
    Raises TransitionError with a human-readable reason otherwise.
    """
    current = CaseState(case.current_state)
    target = _coerce_state(target)
    method = ProcurementMethod(case.method)

    if target is current:
        return Transition(current, target, is_noop=True, is_override=False)

    if target not in states_for_method(method):
        raise TransitionError(f"{target.value} is not part of the {method.value} workflow")

    if STATE_ORDER[target] < STATE_ORDER[current]:
        if not is_override:
            raise TransitionError("backward transition")
        return Transition(current, target, is_override=True)

    if is_override:
        return Transition(current, target, is_override=True)

    if target not in allowed_next_states(case):
        raise TransitionError(f"Transition not allowed: {current.value} -> {target.value}")

    reason = missing_prerequisite(case, target, min_quotations)
    if reason:
        raise TransitionError(reason)

    return Transition(current, target)
