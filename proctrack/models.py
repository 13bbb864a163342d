"""
Procurement Case Tracker – Domain Models

Includes:
- Closed enumerations for procurement method, case state, roles, audit change types
  and reminder types (the state machine itself lives in workflow.py).
- ProcurementCase: the single root entity; `current_state` is the lifecycle authority.
- Stage sub-records: singleton (one per case, unique case_id) and repeatable.
- ActivityLog (append-only), Reminder, IdempotencyKey, User.

IMPORTANT:
- Sub-records and log rows reference the case WITHOUT cascade. Cases are never deleted
  through the API; the database refuses to drop a case that still has dependants.
- ActivityLog rows are never updated or deleted by application code.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy.orm import declared_attr
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db
from .utils import token_digest, utcnow


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------
class ProcurementMethod(str, enum.Enum):
    SMALL_VALUE_RFQ = "SMALL_VALUE_RFQ"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    PUBLIC_BIDDING = "PUBLIC_BIDDING"


class CaseState(str, enum.Enum):
    """Lifecycle states, declared in global lifecycle order (see workflow.STATE_ORDER)."""

    DRAFT = "DRAFT"
    RFQ_ISSUED = "RFQ_ISSUED"
    QUOTATION_COLLECTION = "QUOTATION_COLLECTION"
    ABSTRACT_OF_QUOTATIONS = "ABSTRACT_OF_QUOTATIONS"
    BID_BULLETIN = "BID_BULLETIN"
    PRE_BID_CONF = "PRE_BID_CONF"
    BID_OPENING = "BID_OPENING"
    TWG_EVALUATION = "TWG_EVALUATION"
    POST_QUALIFICATION = "POST_QUALIFICATION"
    BAC_RESOLUTION = "BAC_RESOLUTION"
    AWARD = "AWARD"
    CONTRACT = "CONTRACT"
    NOTICE_TO_PROCEED = "NOTICE_TO_PROCEED"
    PROGRESS_BILLING = "PROGRESS_BILLING"
    PMT_INSPECTION = "PMT_INSPECTION"
    DELIVERY = "DELIVERY"
    INSPECTION = "INSPECTION"
    ACCEPTANCE = "ACCEPTANCE"
    ORS = "ORS"
    DV = "DV"
    CHECK = "CHECK"
    CHECK_ADVICE = "CHECK_ADVICE"
    CLOSED = "CLOSED"


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    PROCUREMENT_MANAGER = "PROCUREMENT_MANAGER"
    SUPPLY_MANAGER = "SUPPLY_MANAGER"
    BUDGET_MANAGER = "BUDGET_MANAGER"
    ACCOUNTING_MANAGER = "ACCOUNTING_MANAGER"
    CASHIER_MANAGER = "CASHIER_MANAGER"
    BAC_SECRETARIAT = "BAC_SECRETARIAT"
    TWG_MEMBER = "TWG_MEMBER"
    APPROVER = "APPROVER"
    VIEWER = "VIEWER"


class ChangeType(str, enum.Enum):
    TRANSITION = "TRANSITION"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ReminderType(str, enum.Enum):
    PRE_BID_CONF = "PRE_BID_CONF"
    BID_OPENING = "BID_OPENING"
    DELIVERY_DUE = "DELIVERY_DUE"


class InspectionStatus(str, enum.Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------
def json_value(value):
    """Convert a column value to a JSON-friendly value."""
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


class RecordMixin:
    """Column-based dict export for API responses."""

    def to_dict(self) -> dict:
        return {column.name: json_value(getattr(self, column.name)) for column in self.__table__.columns}


class CaseRecordMixin(RecordMixin):
    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class SingletonRecordMixin(CaseRecordMixin):
    """Stage record that exists at most once per case."""

    @declared_attr
    def case_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("procurement_cases.id"),
            nullable=False,
            unique=True,
            index=True,
        )


class RepeatableRecordMixin(CaseRecordMixin):
    """Stage record that may occur many times per case."""

    @declared_attr
    def case_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("procurement_cases.id"),
            nullable=False,
            index=True,
        )


# ---------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------
class User(UserMixin, RecordMixin, db.Model):
    """System user. One role per user; the role drives every permission check."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)

    # SHA-256 of the bearer token (the token itself is shown once, never stored).
    api_token_hash = db.Column(db.String(64), unique=True, nullable=True, index=True)

    role = db.Column(db.Enum(Role, name="user_role"), nullable=False, default=Role.VIEWER, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def set_api_token(self, token: str):
        self.api_token_hash = token_digest(token)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": json_value(self.role),
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.email} {self.role}>"


# ---------------------------------------------------------------------
# Procurement case (root)
# ---------------------------------------------------------------------
class ProcurementCase(RecordMixin, db.Model):
    __tablename__ = "procurement_cases"

    id = db.Column(db.Integer, primary_key=True)

    title = db.Column(db.String(255), nullable=False)
    method = db.Column(db.Enum(ProcurementMethod, name="procurement_method"), nullable=False, index=True)
    current_state = db.Column(
        db.Enum(CaseState, name="case_state"),
        nullable=False,
        default=CaseState.DRAFT,
        index=True,
    )

    # Set when the Notice to Proceed is issued (drives the DELIVERY_DUE reminder).
    delivery_due_at = db.Column(db.DateTime, nullable=True)

    # Optimistic concurrency: concurrent writers of the same case row cannot both win.
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Singleton stages
    rfq = db.relationship("RFQ", uselist=False, backref="case")
    abstract = db.relationship("AbstractOfQuotations", uselist=False, backref="case")
    pre_bid = db.relationship("PreBidConference", uselist=False, backref="case")
    twg_evaluation = db.relationship("TWGEvaluation", uselist=False, backref="case")
    post_qualification = db.relationship("PostQualification", uselist=False, backref="case")
    bac_resolution = db.relationship("BACResolution", uselist=False, backref="case")
    award = db.relationship("Award", uselist=False, backref="case")
    contract = db.relationship("Contract", uselist=False, backref="case")
    ntp = db.relationship("NoticeToProceed", uselist=False, backref="case")
    progress_billing = db.relationship("ProgressBilling", uselist=False, backref="case")
    pmt_inspection = db.relationship("PMTInspection", uselist=False, backref="case")
    inspection = db.relationship("InspectionReport", uselist=False, backref="case")
    acceptance = db.relationship("Acceptance", uselist=False, backref="case")
    ors = db.relationship("ORS", uselist=False, backref="case")
    dv = db.relationship("DV", uselist=False, backref="case")
    check = db.relationship("Check", uselist=False, backref="case")
    check_advice = db.relationship("CheckAdvice", uselist=False, backref="case")

    # Repeatable records
    quotations = db.relationship("Quotation", backref="case", order_by="Quotation.id")
    bids = db.relationship("Bid", backref="case", order_by="Bid.id")
    bid_bulletins = db.relationship("BidBulletin", backref="case", order_by="BidBulletin.id")
    deliveries = db.relationship("Delivery", backref="case", order_by="Delivery.id")
    attachments = db.relationship("Attachment", backref="case", order_by="Attachment.id")
    reminders = db.relationship("Reminder", backref="case", order_by="Reminder.due_at")

    def __repr__(self):
        return f"<ProcurementCase {self.id} {self.method} {self.current_state}>"


# ---------------------------------------------------------------------
# Small value procurement (RFQ)
# ---------------------------------------------------------------------
class RFQ(SingletonRecordMixin, db.Model):
    __tablename__ = "rfqs"

    rfq_number = db.Column(db.String(100), nullable=True, index=True)
    issued_at = db.Column(db.DateTime, nullable=True)
    closing_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class Quotation(RepeatableRecordMixin, db.Model):
    __tablename__ = "quotations"

    supplier_name = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    is_responsive = db.Column(db.Boolean, default=True, nullable=False)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class AbstractOfQuotations(SingletonRecordMixin, db.Model):
    __tablename__ = "abstracts_of_quotations"

    notes = db.Column(db.Text, nullable=True)


# ---------------------------------------------------------------------
# Public bidding / infrastructure
# ---------------------------------------------------------------------
class BidBulletin(RepeatableRecordMixin, db.Model):
    __tablename__ = "bid_bulletins"

    bulletin_number = db.Column(db.Integer, nullable=True)
    title = db.Column(db.String(255), nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class PreBidConference(SingletonRecordMixin, db.Model):
    __tablename__ = "pre_bid_conferences"

    scheduled_at = db.Column(db.DateTime, nullable=True)
    minutes_url = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.Text, nullable=True)


class Bid(RepeatableRecordMixin, db.Model):
    __tablename__ = "bids"

    bidder_name = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    is_responsive = db.Column(db.Boolean, default=True, nullable=False)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    opened_at = db.Column(db.DateTime, nullable=True)


class TWGEvaluation(SingletonRecordMixin, db.Model):
    __tablename__ = "twg_evaluations"

    result = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    evaluated_at = db.Column(db.DateTime, default=utcnow, nullable=True)


class PostQualification(SingletonRecordMixin, db.Model):
    __tablename__ = "post_qualifications"

    lowest_responsive_bidder = db.Column(db.String(255), nullable=True)
    passed = db.Column(db.Boolean, default=False, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)


# ---------------------------------------------------------------------
# Award and contract
# ---------------------------------------------------------------------
class BACResolution(SingletonRecordMixin, db.Model):
    __tablename__ = "bac_resolutions"

    resolution_number = db.Column(db.String(100), nullable=True, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class Award(SingletonRecordMixin, db.Model):
    __tablename__ = "awards"

    awarded_to = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=True)
    notice_date = db.Column(db.DateTime, nullable=True)


class Contract(SingletonRecordMixin, db.Model):
    __tablename__ = "contracts"

    contract_no = db.Column(db.String(100), nullable=False, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=True)
    signed_at = db.Column(db.DateTime, nullable=True)


class NoticeToProceed(SingletonRecordMixin, db.Model):
    __tablename__ = "notices_to_proceed"

    issued_at = db.Column(db.DateTime, nullable=True)
    days_to_comply = db.Column(db.Integer, nullable=True)


# ---------------------------------------------------------------------
# Implementation (supply / infrastructure)
# ---------------------------------------------------------------------
class ProgressBilling(SingletonRecordMixin, db.Model):
    __tablename__ = "progress_billings"

    billing_number = db.Column(db.String(100), nullable=True)
    percent_complete = db.Column(db.Numeric(5, 2), nullable=True)
    amount = db.Column(db.Numeric(14, 2), nullable=True)
    billed_at = db.Column(db.DateTime, nullable=True)


class PMTInspection(SingletonRecordMixin, db.Model):
    __tablename__ = "pmt_inspections"

    status = db.Column(db.Enum(InspectionStatus, name="pmt_inspection_status"), nullable=False)
    inspected_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class Delivery(RepeatableRecordMixin, db.Model):
    __tablename__ = "deliveries"

    receipt_number = db.Column(db.String(100), nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class InspectionReport(SingletonRecordMixin, db.Model):
    __tablename__ = "inspection_reports"

    status = db.Column(db.Enum(InspectionStatus, name="inspection_status"), nullable=False)
    inspector = db.Column(db.String(255), nullable=True)
    inspected_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)


class Acceptance(SingletonRecordMixin, db.Model):
    __tablename__ = "acceptances"

    accepted_at = db.Column(db.DateTime, nullable=True)
    officer = db.Column(db.String(255), nullable=True)


# ---------------------------------------------------------------------
# Financial settlement
# ---------------------------------------------------------------------
class ORS(SingletonRecordMixin, db.Model):
    """Obligation Request and Status."""

    __tablename__ = "ors"

    ors_number = db.Column(db.String(100), nullable=True, index=True)
    prepared_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.String(255), nullable=True)


class DV(SingletonRecordMixin, db.Model):
    """Disbursement Voucher."""

    __tablename__ = "disbursement_vouchers"

    dv_number = db.Column(db.String(100), nullable=True, index=True)
    prepared_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.String(255), nullable=True)


class Check(SingletonRecordMixin, db.Model):
    __tablename__ = "checks"

    check_number = db.Column(db.String(100), nullable=True, index=True)
    prepared_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.String(255), nullable=True)


class CheckAdvice(SingletonRecordMixin, db.Model):
    __tablename__ = "check_advices"

    advice_number = db.Column(db.String(100), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)


class Attachment(RepeatableRecordMixin, db.Model):
    """Attachment metadata. File bytes live in external storage; only the URL is kept."""

    __tablename__ = "attachments"

    type = db.Column(db.String(80), nullable=False)
    url = db.Column(db.String(1000), nullable=False)
    file_name = db.Column(db.String(255), nullable=True)


# ---------------------------------------------------------------------
# Audit, reminders, idempotency
# ---------------------------------------------------------------------
class ActivityLog(RecordMixin, db.Model):
    """Append-only audit trail of state changes and data mutations."""

    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)

    case_id = db.Column(db.Integer, db.ForeignKey("procurement_cases.id"), nullable=False, index=True)

    action = db.Column(db.String(80), nullable=False, index=True)
    from_state = db.Column(db.Enum(CaseState, name="log_from_state"), nullable=True)
    to_state = db.Column(db.Enum(CaseState, name="log_to_state"), nullable=True, index=True)
    legal_basis = db.Column(db.String(500), nullable=True)

    change_type = db.Column(db.Enum(ChangeType, name="change_type"), nullable=True, index=True)
    entity_type = db.Column(db.String(80), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)

    payload = db.Column(db.JSON, nullable=True)
    before_data = db.Column(db.JSON, nullable=True)
    after_data = db.Column(db.JSON, nullable=True)
    reason = db.Column(db.Text, nullable=True)

    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    actor_role = db.Column(db.String(40), nullable=True)
    username_snapshot = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    is_override = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)


class Reminder(RecordMixin, db.Model):
    __tablename__ = "reminders"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.Integer, db.ForeignKey("procurement_cases.id"), nullable=False, index=True)
    type = db.Column(db.Enum(ReminderType, name="reminder_type"), nullable=False)
    due_at = db.Column(db.DateTime, nullable=False, index=True)
    sent_at = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class IdempotencyKey(db.Model):
    """One row per accepted `{action}:{caseId}:{clientKey}`. Never updated."""

    __tablename__ = "idempotency_keys"

    key = db.Column(db.String(255), primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
