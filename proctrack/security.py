"""
proctrack/security.py

Role-based access guard for the case tracker.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Each user holds exactly one Role. ADMIN can do everything, including admin override
  of locked records.
- ACTION_ROLES answers "who may create this record type" (stage POST endpoints).
- ROLE_CAPABILITIES answers "who may view/create/edit/delete/override this record type".

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict, FrozenSet, Iterable

from flask_login import current_user

from .errors import Forbidden, Unauthorized
from .models import Role

VIEW = "view"
CREATE = "create"
EDIT = "edit"
DELETE = "delete"
ADMIN_OVERRIDE = "admin_override"

ALL_CAPABILITIES = frozenset({VIEW, CREATE, EDIT, DELETE, ADMIN_OVERRIDE})

# Record types (snake_case keys shared by stages.py and locks.py)
RECORD_TYPES = (
    "rfq",
    "quotation",
    "abstract",
    "bid_bulletin",
    "pre_bid",
    "bid",
    "twg",
    "post_qualification",
    "bac_resolution",
    "award",
    "contract",
    "ntp",
    "progress_billing",
    "pmt_inspection",
    "delivery",
    "inspection",
    "acceptance",
    "ors",
    "dv",
    "check",
    "check_advice",
    "attachment",
)

_OPERATIONAL_ROLES = frozenset(role for role in Role if role is not Role.VIEWER and role is not Role.APPROVER)

ACTION_ROLES: Dict[str, FrozenSet[Role]] = {
    "rfq": frozenset({Role.PROCUREMENT_MANAGER, Role.BAC_SECRETARIAT, Role.ADMIN}),
    "quotation": frozenset({Role.PROCUREMENT_MANAGER, Role.BAC_SECRETARIAT, Role.ADMIN}),
    "abstract": frozenset({Role.PROCUREMENT_MANAGER, Role.ADMIN}),
    "bid_bulletin": frozenset({Role.BAC_SECRETARIAT, Role.ADMIN}),
    "pre_bid": frozenset({Role.BAC_SECRETARIAT, Role.ADMIN}),
    "bid": frozenset({Role.BAC_SECRETARIAT, Role.ADMIN}),
    "twg": frozenset({Role.TWG_MEMBER, Role.ADMIN}),
    "post_qualification": frozenset({Role.BAC_SECRETARIAT, Role.ADMIN}),
    "bac_resolution": frozenset({Role.BAC_SECRETARIAT, Role.ADMIN}),
    "award": frozenset({Role.APPROVER, Role.BAC_SECRETARIAT, Role.ADMIN}),
    "contract": frozenset({Role.PROCUREMENT_MANAGER, Role.ADMIN}),
    "ntp": frozenset({Role.PROCUREMENT_MANAGER, Role.ADMIN}),
    "progress_billing": frozenset({Role.PROCUREMENT_MANAGER, Role.ADMIN}),
    "pmt_inspection": frozenset({Role.PROCUREMENT_MANAGER, Role.ADMIN}),
    "delivery": frozenset({Role.SUPPLY_MANAGER, Role.ADMIN}),
    "inspection": frozenset({Role.SUPPLY_MANAGER, Role.ADMIN}),
    "acceptance": frozenset({Role.SUPPLY_MANAGER, Role.ADMIN}),
    "ors": frozenset({Role.BUDGET_MANAGER, Role.ADMIN}),
    "dv": frozenset({Role.ACCOUNTING_MANAGER, Role.ADMIN}),
    "check": frozenset({Role.CASHIER_MANAGER, Role.ADMIN}),
    "check_advice": frozenset({Role.CASHIER_MANAGER, Role.ADMIN}),
    "attachment": _OPERATIONAL_ROLES,
}

_VCE = frozenset({VIEW, CREATE, EDIT})

ROLE_CAPABILITIES: Dict[Role, Dict[str, FrozenSet[str]]] = {
    Role.ADMIN: {record_type: ALL_CAPABILITIES for record_type in RECORD_TYPES},
    Role.PROCUREMENT_MANAGER: {
        "rfq": _VCE,
        "quotation": frozenset({VIEW, CREATE, EDIT, DELETE}),
        "abstract": _VCE,
        "contract": _VCE,
        "ntp": _VCE,
        "progress_billing": _VCE,
        "pmt_inspection": _VCE,
        "attachment": frozenset({VIEW, CREATE, DELETE}),
    },
    Role.BAC_SECRETARIAT: {
        "rfq": _VCE,
        "quotation": _VCE,
        "bid_bulletin": _VCE,
        "pre_bid": _VCE,
        "bid": _VCE,
        "post_qualification": _VCE,
        "bac_resolution": _VCE,
        "award": _VCE,
        "attachment": frozenset({VIEW, CREATE}),
    },
    Role.SUPPLY_MANAGER: {
        "delivery": _VCE,
        "inspection": _VCE,
        "acceptance": _VCE,
        "attachment": frozenset({VIEW, CREATE}),
    },
    Role.BUDGET_MANAGER: {"ors": _VCE, "attachment": frozenset({VIEW, CREATE})},
    Role.ACCOUNTING_MANAGER: {"dv": _VCE, "attachment": frozenset({VIEW, CREATE})},
    Role.CASHIER_MANAGER: {
        "check": _VCE,
        "check_advice": _VCE,
        "attachment": frozenset({VIEW, CREATE}),
    },
    Role.TWG_MEMBER: {"twg": _VCE, "attachment": frozenset({VIEW, CREATE})},
    # Approver mostly signs off.
    Role.APPROVER: {"award": frozenset({VIEW, EDIT})},
    Role.VIEWER: {},
}


def _as_role(role: Any) -> Role | None:
    if role is None:
        return None
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role))
    except ValueError:
        return None


def required_roles(record_type: str) -> FrozenSet[Role]:
    return ACTION_ROLES.get(record_type, frozenset())


def can_perform(role: Any, record_type: str, capability: str) -> bool:
    """Return True if `role` holds `capability` on `record_type`. Unknown roles get nothing."""
    resolved = _as_role(role)
    if resolved is None:
        return False
    return capability in ROLE_CAPABILITIES.get(resolved, {}).get(record_type, frozenset())


def has_admin_override(role: Any, record_type: str) -> bool:
    return can_perform(role, record_type, ADMIN_OVERRIDE)


def can_override_transitions(role: Any) -> bool:
    """Forcing a case off its normal path needs override power on every record type."""
    return all(has_admin_override(role, record_type) for record_type in RECORD_TYPES)


def check_role(identity: Any, allowed_roles: Iterable[Role]) -> Role:
    """
    Resolve the identity's role and check it against `allowed_roles`.

    Raises:
        Unauthorized: anonymous, inactive or role-less identity.
        Forbidden: resolved role not in `allowed_roles`.
    """
    if identity is None or not getattr(identity, "is_authenticated", False):
        raise Unauthorized()
    if not getattr(identity, "is_active", False):
        raise Unauthorized("Account is disabled")

    role = _as_role(getattr(identity, "role", None))
    if role is None:
        raise Unauthorized()

    if role not in set(allowed_roles):
        raise Forbidden(f"Role {role.value} is not permitted for this action")
    return role


def roles_required(*roles: Role) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator: the current user must hold one of `roles`."""

    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            check_role(current_user, roles)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def login_required_json(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: any authenticated, active user (read endpoints)."""

    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        check_role(current_user, Role)
        return view_func(*args, **kwargs)

    return wrapper
