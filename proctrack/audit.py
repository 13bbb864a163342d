"""
proctrack/audit.py

Append-only activity log for procurement cases.

Goals:
- Capture WHO did WHAT to WHICH case/record, with the state move and BEFORE/AFTER snapshots.
- Store a username/role snapshot so history survives later account changes.
- Store IP address for traceability.

IMPORTANT:
- Entries are written inside a SAVEPOINT of the caller's transaction. If the insert fails,
  only the savepoint is rolled back: the failure is reported on the `proctrack.audit`
  logger and the caller's state change is kept. The calling route still controls the
  outer commit/rollback.
- Entries are never updated or deleted. There is intentionally no code path for it.

SECURITY NOTE:
- The client IP comes from utils.client_ip(); behind a reverse proxy set PROXY_FIX_X_FOR.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from flask import has_request_context, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import ActivityLog, CaseState, ChangeType
from .utils import client_ip

audit_logger = logging.getLogger("proctrack.audit")
alerts_logger = logging.getLogger("proctrack.alerts")


def _safe_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Snapshot a model instance's column values as strings.

    Captures only scalar columns (not relationships).
    """
    if instance is None:
        return {}
    return {column.name: _safe_str(getattr(instance, column.name)) for column in instance.__table__.columns}


def _jsonable(data: Any) -> Any:
    if data is None:
        return None
    return json.loads(json.dumps(data, ensure_ascii=False, default=str))


def _actor_snapshot() -> Dict[str, Any]:
    if not has_request_context():
        return {}
    snapshot: Dict[str, Any] = {"ip_address": client_ip(request)}
    if current_user.is_authenticated:
        role = getattr(current_user, "role", None)
        snapshot.update(
            actor_id=current_user.id,
            actor_role=getattr(role, "value", role),
            username_snapshot=current_user.email,
        )
    return snapshot


def log_activity(
    case_id: int,
    action: str,
    *,
    from_state: Optional[CaseState] = None,
    to_state: Optional[CaseState] = None,
    legal_basis: Optional[str] = None,
    payload: Any = None,
    change_type: Optional[ChangeType] = None,
    entity: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    is_override: bool = False,
) -> Optional[ActivityLog]:
    """
    Append one ActivityLog entry for `case_id`.

    Returns the entry, or None when the write failed (failure is logged, not raised).
    Pending changes of the caller are flushed first, so their errors still propagate.
    """
    db.session.flush()

    entry = ActivityLog(
        case_id=case_id,
        action=action,
        from_state=from_state,
        to_state=to_state,
        legal_basis=legal_basis,
        payload=_jsonable(payload),
        change_type=change_type,
        entity_type=entity.__class__.__name__ if entity is not None else None,
        entity_id=getattr(entity, "id", None),
        before_data=_jsonable(before),
        after_data=_jsonable(after),
        reason=reason,
        is_override=bool(is_override),
        **_actor_snapshot(),
    )

    try:
        with db.session.begin_nested():
            db.session.add(entry)
    except SQLAlchemyError:
        audit_logger.error(
            "Activity log write failed (case=%s action=%s %s->%s)",
            case_id,
            action,
            getattr(from_state, "value", from_state),
            getattr(to_state, "value", to_state),
            exc_info=True,
        )
        return None
    return entry


def log_edit(
    case_id: int,
    entity: Any,
    *,
    record_type: str,
    before,
    after,
    reason: str,
    is_override: bool = False,
):
    return log_activity(
        case_id,
        f"edit_{record_type}",
        change_type=ChangeType.UPDATE,
        entity=entity,
        before=before,
        after=after,
        reason=reason,
        is_override=is_override,
    )


def log_delete(
    case_id: int,
    entity: Any,
    *,
    record_type: str,
    before,
    reason: str,
    is_override: bool = False,
    from_state: Optional[CaseState] = None,
    to_state: Optional[CaseState] = None,
):
    return log_activity(
        case_id,
        f"delete_{record_type}",
        change_type=ChangeType.DELETE,
        entity=entity,
        before=before,
        reason=reason,
        is_override=is_override,
        from_state=from_state,
        to_state=to_state,
    )


def log_override_alert(operation: str, entity_type: str, case_id: int, actor: Any, reason: Optional[str]) -> None:
    """Emit an alert line for every admin override (picked up by log shipping)."""
    alerts_logger.warning(
        "[ADMIN OVERRIDE ALERT] %s on %s for case %s by %s (%s): %s",
        operation,
        entity_type,
        case_id,
        getattr(actor, "email", None),
        getattr(getattr(actor, "role", None), "value", None),
        reason,
    )


def timeline(case_id: int) -> List[ActivityLog]:
    return (
        ActivityLog.query.filter_by(case_id=case_id)
        .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        .all()
    )
