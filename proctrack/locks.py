"""
proctrack/locks.py

Edit/delete lock policy for stage records.

A record becomes locked once downstream data depends on it. Locked records can only be
changed through admin override; every override is audited (is_override=True) and alerted.

Pure functions over the case's loaded relationships. The same evaluation feeds the
server-side PATCH/DELETE gates and the `permissions` preview in case detail responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import CaseState, ProcurementCase
from .security import DELETE, EDIT, RECORD_TYPES, can_perform, has_admin_override


@dataclass(frozen=True)
class LockState:
    locked: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class Access:
    locked: bool
    reason: Optional[str]
    can_edit: bool
    can_delete: bool
    requires_override: bool

    def to_dict(self) -> dict:
        return {
            "locked": self.locked,
            "reason": self.reason,
            "can_edit": self.can_edit,
            "can_delete": self.can_delete,
            "requires_override": self.requires_override,
        }


UNLOCKED = LockState(False)

LOCK_RULES: Dict[str, Callable[[ProcurementCase], Optional[str]]] = {
    "ors": lambda case: "DV already created" if case.dv is not None else None,
    "dv": lambda case: "Check already created" if case.check is not None else None,
    "check": lambda case: "Case is closed" if CaseState(case.current_state) is CaseState.CLOSED else None,
    "rfq": lambda case: "Quotations already collected" if case.quotations else None,
    "quotation": lambda case: "Abstract of Quotations already created" if case.abstract is not None else None,
}

# Record types with no lock rule. Listed so that coverage is a decision, not an omission.
NEVER_LOCKED = frozenset(record_type for record_type in RECORD_TYPES if record_type not in LOCK_RULES)


def evaluate_lock(record_type: str, case: ProcurementCase) -> LockState:
    rule = LOCK_RULES.get(record_type)
    if rule is None:
        return UNLOCKED
    reason = rule(case)
    return LockState(True, reason) if reason else UNLOCKED


def edit_access(role, record_type: str, case: ProcurementCase) -> Access:
    """
    Combine the lock state with the role's capabilities.

    - Unlocked: edit/delete follow the role's edit/delete capabilities.
    - Locked: edit/delete are only possible with admin override, and then require it.
    """
    lock = evaluate_lock(record_type, case)
    override = has_admin_override(role, record_type)

    if lock.locked:
        return Access(
            locked=True,
            reason=lock.reason,
            can_edit=override,
            can_delete=override,
            requires_override=override,
        )

    return Access(
        locked=False,
        reason=None,
        can_edit=can_perform(role, record_type, EDIT),
        can_delete=can_perform(role, record_type, DELETE),
        requires_override=False,
    )
