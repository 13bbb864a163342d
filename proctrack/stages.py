"""
proctrack/stages.py

Stage descriptors and the generic stage-record handler.

Every lifecycle stage that is backed by a sub-record (RFQ, quotations, ORS, ...) is
described once in STAGES. The cases blueprint serves all of them through the same
create / edit / delete operations defined here:

- record_stage: transition check, create (or upsert a singleton), move the case,
  write activity log entries, schedule reminders.
- edit_stage / delete_stage: lock policy gate, change, audited UPDATE / DELETE entry.
  Deleting the singleton that moved the case rolls the case back and cancels the
  record's pending reminders.
- apply_transition: validated state change + TRANSITION log entry (also used by the
  generic transition endpoint).

IMPORTANT:
- These functions stage changes on db.session and flush; the calling route commits.
- The transition check always runs BEFORE anything is written, so a rejected request
  leaves neither a record nor a state change behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Type

from flask import current_app
from flask_wtf import FlaskForm
from sqlalchemy.exc import IntegrityError

from . import forms
from .audit import log_activity, log_delete, log_edit, log_override_alert, serialize_model
from .errors import ConcurrentModification, Forbidden, LockedError
from .extensions import db
from .locks import edit_access
from .models import (
    ActivityLog,
    Acceptance,
    AbstractOfQuotations,
    Attachment,
    Award,
    BACResolution,
    Bid,
    BidBulletin,
    CaseState,
    ChangeType,
    Check,
    CheckAdvice,
    Contract,
    Delivery,
    DV,
    InspectionReport,
    NoticeToProceed,
    ORS,
    PMTInspection,
    PostQualification,
    PreBidConference,
    ProcurementCase,
    ProgressBilling,
    Quotation,
    ReminderType,
    RFQ,
    TWGEvaluation,
)
from .reminders import cancel_pending, schedule
from .security import required_roles
from .utils import utcnow
from .workflow import Transition, assert_can_transition, previous_state

logger = logging.getLogger(__name__)

S = CaseState

ReminderHook = Callable[[ProcurementCase, Any, FlaskForm, datetime], None]


@dataclass(frozen=True)
class StageDescriptor:
    slug: str
    key: str
    action: str
    model: Type[db.Model]
    form: Type[FlaskForm]
    relation: str
    target_state: Optional[CaseState] = None
    repeatable: bool = False
    transition_action: Optional[str] = None
    legal_basis: Optional[str] = None
    reminders: Optional[ReminderHook] = None
    reminder_types: Tuple[ReminderType, ...] = ()
    # Form fields that only feed the reminder hook (not stored on the record).
    reminder_fields: FrozenSet[str] = frozenset()

    @property
    def roles(self) -> FrozenSet:
        return required_roles(self.key)


# ---------------------------------------------------------------------
# Reminder hooks
# ---------------------------------------------------------------------
def _schedule_if_future(case: ProcurementCase, reminder_type: ReminderType, due_at: Optional[datetime], now: datetime):
    if due_at is None or due_at <= now:
        return None
    return schedule(case.id, reminder_type, due_at, replace_pending=True)


def _pre_bid_reminders(case, record, form, now):
    _schedule_if_future(case, ReminderType.PRE_BID_CONF, record.scheduled_at, now)
    bid_opening_at = form.bid_opening_at.data if "bid_opening_at" in form else None
    _schedule_if_future(case, ReminderType.BID_OPENING, bid_opening_at, now)


def _ntp_reminders(case, record, form, now):
    days = record.days_to_comply or current_app.config.get("DEFAULT_DAYS_TO_COMPLY", 30)
    issued_at = record.issued_at or now
    case.delivery_due_at = issued_at + timedelta(days=days)
    _schedule_if_future(case, ReminderType.DELIVERY_DUE, case.delivery_due_at, now)


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------
_DESCRIPTORS = (
    StageDescriptor("rfq", "rfq", "rfq_issued", RFQ, forms.RFQForm, "rfq", S.RFQ_ISSUED,
                    legal_basis="RA 9184 IRR Sec. 53.9 (Small Value Procurement)"),
    StageDescriptor("quotations", "quotation", "add_quotation", Quotation, forms.QuotationForm, "quotations",
                    S.QUOTATION_COLLECTION, repeatable=True, transition_action="start_quotation_collection"),
    StageDescriptor("abstract", "abstract", "abstract_of_quotations", AbstractOfQuotations, forms.AbstractForm,
                    "abstract", S.ABSTRACT_OF_QUOTATIONS,
                    legal_basis="RA 9184 IRR Sec. 54.2 (Shopping/Small Value Procurement)"),
    StageDescriptor("bid-bulletins", "bid_bulletin", "bid_bulletin", BidBulletin, forms.BidBulletinForm,
                    "bid_bulletins", S.BID_BULLETIN, repeatable=True,
                    legal_basis="RA 9184 IRR Sec. 21 (Advertising and Posting)"),
    StageDescriptor("pre-bid", "pre_bid", "pre_bid_conf", PreBidConference, forms.PreBidForm, "pre_bid",
                    S.PRE_BID_CONF, legal_basis="RA 9184 IRR Sec. 22 (Pre-Bid Conference)",
                    reminders=_pre_bid_reminders,
                    reminder_types=(ReminderType.PRE_BID_CONF, ReminderType.BID_OPENING),
                    reminder_fields=frozenset({"bid_opening_at"})),
    StageDescriptor("bids", "bid", "add_bid", Bid, forms.BidForm, "bids", S.BID_OPENING, repeatable=True,
                    transition_action="start_bid_opening",
                    legal_basis="RA 9184 IRR Sec. 29-30 (Submission and Opening of Bids)"),
    StageDescriptor("twg", "twg", "twg_evaluation", TWGEvaluation, forms.TWGForm, "twg_evaluation",
                    S.TWG_EVALUATION, legal_basis="RA 9184 IRR Sec. 30-34 (Bid Evaluation)"),
    StageDescriptor("post-qualification", "post_qualification", "post_qualification", PostQualification,
                    forms.PostQualificationForm, "post_qualification", S.POST_QUALIFICATION,
                    legal_basis="RA 9184 IRR Sec. 34 (Post-Qualification)"),
    StageDescriptor("bac-resolution", "bac_resolution", "bac_resolution", BACResolution, forms.BACResolutionForm,
                    "bac_resolution", S.BAC_RESOLUTION,
                    legal_basis="RA 9184 IRR Sec. 12-14 (BAC functions and Awards)"),
    StageDescriptor("award", "award", "award", Award, forms.AwardForm, "award", S.AWARD,
                    legal_basis="RA 9184 IRR Sec. 37 (Notice and Award of Contract)"),
    StageDescriptor("contract", "contract", "contract", Contract, forms.ContractForm, "contract", S.CONTRACT,
                    legal_basis="RA 9184 IRR Sec. 37 (Contract Signing)"),
    StageDescriptor("ntp", "ntp", "ntp_issued", NoticeToProceed, forms.NTPForm, "ntp", S.NOTICE_TO_PROCEED,
                    legal_basis="RA 9184 IRR Sec. 37.4 (Notice to Proceed)", reminders=_ntp_reminders,
                    reminder_types=(ReminderType.DELIVERY_DUE,)),
    StageDescriptor("progress-billing", "progress_billing", "progress_billing", ProgressBilling,
                    forms.ProgressBillingForm, "progress_billing", S.PROGRESS_BILLING),
    StageDescriptor("pmt-inspection", "pmt_inspection", "pmt_inspection", PMTInspection, forms.PMTInspectionForm,
                    "pmt_inspection", S.PMT_INSPECTION),
    StageDescriptor("deliveries", "delivery", "delivery", Delivery, forms.DeliveryForm, "deliveries", S.DELIVERY,
                    repeatable=True, legal_basis="RA 9184: Contract Implementation/Delivery"),
    StageDescriptor("inspection", "inspection", "inspection", InspectionReport, forms.InspectionForm, "inspection",
                    S.INSPECTION, legal_basis="COA Rules: Inspection prior to Acceptance"),
    StageDescriptor("acceptance", "acceptance", "acceptance", Acceptance, forms.AcceptanceForm, "acceptance",
                    S.ACCEPTANCE, legal_basis="Property/Supply Acceptance Procedures"),
    StageDescriptor("ors", "ors", "ors", ORS, forms.ORSForm, "ors", S.ORS,
                    legal_basis="PFM: ORS preparation (Budget)"),
    StageDescriptor("dv", "dv", "dv", DV, forms.DVForm, "dv", S.DV, legal_basis="PFM: DV preparation (Accounting)"),
    StageDescriptor("check", "check", "check", Check, forms.CheckForm, "check", S.CHECK,
                    legal_basis="PFM: Check preparation (Cashier)"),
    StageDescriptor("check-advice", "check_advice", "check_advice", CheckAdvice, forms.CheckAdviceForm,
                    "check_advice", S.CHECK_ADVICE),
    StageDescriptor("attachments", "attachment", "add_attachment", Attachment, forms.AttachmentForm, "attachments",
                    repeatable=True),
)

STAGES: Dict[str, StageDescriptor] = {descriptor.slug: descriptor for descriptor in _DESCRIPTORS}

STAGE_BY_TARGET: Dict[CaseState, StageDescriptor] = {
    descriptor.target_state: descriptor for descriptor in _DESCRIPTORS if descriptor.target_state is not None
}


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
def _move(
    case: ProcurementCase,
    transition: Transition,
    *,
    action: str,
    legal_basis: Optional[str] = None,
    payload: Any = None,
    change_type: ChangeType = ChangeType.TRANSITION,
    entity: Any = None,
    after: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
):
    case.current_state = transition.to_state
    # Version check happens here: a concurrent writer makes this flush raise StaleDataError.
    db.session.flush()
    return log_activity(
        case.id,
        action,
        from_state=transition.from_state,
        to_state=transition.to_state,
        legal_basis=legal_basis,
        payload=payload,
        change_type=change_type,
        entity=entity,
        after=after,
        reason=reason,
        is_override=transition.is_override,
    )


def apply_transition(
    case: ProcurementCase,
    target,
    *,
    action: str = "transition",
    legal_basis: Optional[str] = None,
    payload: Any = None,
    is_override: bool = False,
    reason: Optional[str] = None,
    actor: Any = None,
    min_quotations: int = 3,
) -> Transition:
    """Validate and apply a state change. A no-op transition writes nothing."""
    transition = assert_can_transition(case, target, is_override=is_override, min_quotations=min_quotations)
    if transition.is_noop:
        return transition

    _move(case, transition, action=action, legal_basis=legal_basis, payload=payload, reason=reason)
    if transition.is_override:
        log_override_alert("TRANSITION", "ProcurementCase", case.id, actor, reason or legal_basis)
    logger.info("Case %s: %s -> %s (%s)", case.id, transition.from_state.value, transition.to_state.value, action)
    return transition


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------
def get_record(case: ProcurementCase, descriptor: StageDescriptor, record_id: Optional[int] = None):
    if descriptor.repeatable:
        if record_id is None:
            return None
        return descriptor.model.query.filter_by(id=record_id, case_id=case.id).first()
    return getattr(case, descriptor.relation)


def record_stage(
    case: ProcurementCase,
    descriptor: StageDescriptor,
    form: FlaskForm,
    *,
    min_quotations: int = 3,
    now: Optional[datetime] = None,
):
    """Create (or upsert) the stage record and move the case to the stage's state."""
    transition = None
    if descriptor.target_state is not None:
        transition = assert_can_transition(case, descriptor.target_state, min_quotations=min_quotations)
    moves = transition is not None and not transition.is_noop

    values = forms.column_values(form, descriptor.model)
    existing = None if descriptor.repeatable else getattr(case, descriptor.relation)
    if existing is not None:
        before = serialize_model(existing)
        for name, value in values.items():
            setattr(existing, name, value)
        record = existing
    else:
        before = None
        record = descriptor.model(**{k: v for k, v in values.items() if v is not None})
        record.case = case
        db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError as exc:
        if existing is not None or descriptor.repeatable:
            raise
        # A concurrent request inserted this case's singleton after we loaded the case.
        raise ConcurrentModification(f"{descriptor.key} was recorded by another request; reload and retry") from exc

    if descriptor.reminders is not None:
        descriptor.reminders(case, record, form, now or utcnow())

    record_change = ChangeType.UPDATE if existing is not None else ChangeType.CREATE
    after = serialize_model(record)
    payload = {"id": record.id, **values}

    if moves and descriptor.transition_action:
        _move(case, transition, action=descriptor.transition_action, legal_basis=descriptor.legal_basis)
        log_activity(case.id, descriptor.action, payload=payload, change_type=record_change,
                     entity=record, before=before, after=after)
    elif moves:
        _move(case, transition, action=descriptor.action, legal_basis=descriptor.legal_basis, payload=payload,
              entity=record, after=after)
    else:
        log_activity(case.id, descriptor.action, payload=payload, change_type=record_change,
                     entity=record, before=before, after=after)
    return record


def _deny(access, record_type: str, verb: str):
    if access.locked:
        raise LockedError(access.reason)
    raise Forbidden(f"Role cannot {verb} {record_type}")


def edit_stage(
    case: ProcurementCase,
    descriptor: StageDescriptor,
    record,
    changes: Mapping[str, Any],
    reason: str,
    actor: Any,
    *,
    now: Optional[datetime] = None,
    form: Optional[FlaskForm] = None,
):
    access = edit_access(actor.role, descriptor.key, case)
    if not access.can_edit:
        _deny(access, descriptor.key, "edit")

    before = serialize_model(record)
    for name, value in changes.items():
        setattr(record, name, value)
    db.session.flush()

    if descriptor.reminders is not None and form is not None:
        descriptor.reminders(case, record, form, now or utcnow())

    log_edit(case.id, record, record_type=descriptor.key, before=before, after=serialize_model(record),
             reason=reason, is_override=access.requires_override)
    if access.requires_override:
        log_override_alert("UPDATE", descriptor.model.__name__, case.id, actor, reason)
    return record


def rollback_state(case: ProcurementCase) -> Optional[CaseState]:
    """The state the case entered its current state from."""
    current = CaseState(case.current_state)
    entry = (
        ActivityLog.query.filter(
            ActivityLog.case_id == case.id,
            ActivityLog.to_state == current,
            ActivityLog.from_state.isnot(None),
            ActivityLog.change_type == ChangeType.TRANSITION,
        )
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .first()
    )
    if entry is not None:
        return CaseState(entry.from_state)
    return previous_state(case.method, current)


def delete_stage(case: ProcurementCase, descriptor: StageDescriptor, record, reason: str, actor: Any):
    access = edit_access(actor.role, descriptor.key, case)
    if not access.can_delete:
        _deny(access, descriptor.key, "delete")

    before = serialize_model(record)
    from_state = CaseState(case.current_state)
    to_state = None
    if (
        not descriptor.repeatable
        and descriptor.target_state is not None
        and from_state is descriptor.target_state
    ):
        to_state = rollback_state(case)

    db.session.delete(record)
    db.session.flush()
    db.session.expire(case, [descriptor.relation])

    if descriptor.reminder_types:
        cancelled = cancel_pending(case.id, descriptor.reminder_types)
        if cancelled:
            logger.info("Case %s: %s pending reminder(s) cancelled with %s", case.id, cancelled, descriptor.key)

    if to_state is not None:
        case.current_state = to_state
        db.session.flush()

    log_delete(
        case.id,
        record,
        record_type=descriptor.key,
        before=before,
        reason=reason,
        is_override=access.requires_override,
        from_state=from_state if to_state is not None else None,
        to_state=to_state,
    )
    if access.requires_override:
        log_override_alert("DELETE", descriptor.model.__name__, case.id, actor, reason)
    return to_state
