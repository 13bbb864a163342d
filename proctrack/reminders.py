"""
proctrack/reminders.py

Reminder scheduling and the periodic sweep that delivers due reminders.

IMPORTANT:
- A reminder is marked sent only after the notifier reports success.
- Marking uses a conditional UPDATE (`WHERE sent_at IS NULL`); only the sweeper that
  claims the row writes the `reminder_sent` log entry. Concurrent or repeated sweeps
  therefore never log a reminder twice.
- The sweep commits per reminder so one failure does not hold back the others.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import update

from .audit import log_activity
from .extensions import db
from .models import ProcurementCase, Reminder, ReminderType
from .services import get_services

logger = logging.getLogger(__name__)

SUBJECTS = {
    ReminderType.PRE_BID_CONF: "Pre-bid conference",
    ReminderType.BID_OPENING: "Bid opening",
    ReminderType.DELIVERY_DUE: "Delivery due",
}


def schedule(case_id: int, reminder_type: ReminderType, due_at: datetime, *, replace_pending: bool = False) -> Reminder:
    """
    Add a pending reminder to the session (the caller commits).

    With replace_pending, an existing pending reminder of the same type is moved to
    `due_at` instead of adding a second one.
    """
    reminder_type = ReminderType(reminder_type)
    if replace_pending:
        pending = Reminder.query.filter_by(case_id=case_id, type=reminder_type, sent_at=None).first()
        if pending is not None:
            pending.due_at = due_at
            return pending

    reminder = Reminder(case_id=case_id, type=reminder_type, due_at=due_at)
    db.session.add(reminder)
    return reminder


def cancel_pending(case_id: int, reminder_types: Iterable[ReminderType]) -> int:
    """Delete the case's unsent reminders of the given types (the caller commits)."""
    types = [ReminderType(t) for t in reminder_types]
    if not types:
        return 0
    return (
        Reminder.query.filter(
            Reminder.case_id == case_id,
            Reminder.type.in_(types),
            Reminder.sent_at.is_(None),
        ).delete(synchronize_session="fetch")
    )


def recipient_for(reminder_type: ReminderType) -> str:
    recipients = current_app.config.get("REMINDER_RECIPIENTS") or {}
    default = current_app.config.get("DEFAULT_REMINDER_RECIPIENT", "procurement@proctrack.local")
    return recipients.get(ReminderType(reminder_type).value, default)


def _render(reminder_type: ReminderType, case: Optional[ProcurementCase], case_id: int, due_at: datetime):
    label = SUBJECTS.get(reminder_type, reminder_type.value)
    title = case.title if case is not None else f"Case {case_id}"
    subject = f"Reminder: {label} - {title}"
    body = (
        f"<p>Case <b>{case_id}</b> ({title}) has a due reminder: <b>{label}</b> "
        f"on {due_at:%Y-%m-%d %H:%M} UTC.</p>"
    )
    return subject, body


def sweep_due(now: Optional[datetime] = None) -> int:
    """Deliver every pending reminder due at `now`. Returns how many were marked sent."""
    services = get_services()
    now = now or services.clock()

    due = (
        Reminder.query.filter(Reminder.sent_at.is_(None), Reminder.due_at <= now)
        .order_by(Reminder.due_at.asc(), Reminder.id.asc())
        .all()
    )
    work = [(r.id, r.case_id, ReminderType(r.type), r.due_at) for r in due]
    db.session.rollback()

    sent = 0
    for reminder_id, case_id, reminder_type, due_at in work:
        case = db.session.get(ProcurementCase, case_id)
        to = recipient_for(reminder_type)
        subject, body = _render(reminder_type, case, case_id, due_at)

        try:
            delivered = services.notifier.send(to, subject, body)
        except Exception:
            logger.warning("Notifier raised for reminder %s (case %s)", reminder_id, case_id, exc_info=True)
            delivered = False

        if not delivered:
            logger.warning("Reminder %s (case %s) not delivered; left pending", reminder_id, case_id)
            db.session.rollback()
            continue

        claimed = db.session.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.sent_at.is_(None))
            .values(sent_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed != 1:
            # Another sweep got there first.
            db.session.rollback()
            continue

        log_activity(
            case_id,
            "reminder_sent",
            payload={"reminder_id": reminder_id, "type": reminder_type.value, "to": to},
        )
        db.session.commit()
        sent += 1
        logger.info("Reminder %s (%s) sent for case %s", reminder_id, reminder_type.value, case_id)

    return sent
