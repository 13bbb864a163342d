"""
proctrack/forms.py

Payload validation for the JSON API, built on Flask-WTF / WTForms.

JSON bodies are normalized to snake_case keys and fed to the forms as form data
(`bind_form`). Forms never carry a CSRF token field: CSRF for cookie sessions is enforced
globally by CSRFProtect in the app factory.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Type

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import (
    BooleanField,
    DateTimeField,
    DecimalField,
    IntegerField,
    PasswordField,
    SelectField,
    StringField,
    TextAreaField,
)
from wtforms.validators import URL, DataRequired, InputRequired, Length, NumberRange, Optional as OptionalValue, Regexp

from .errors import ValidationError
from .models import CaseState, InspectionStatus, ProcurementMethod

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

DATETIME_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
]


def _enum_choices(enum_cls: Type[enum.Enum]):
    return [(member.value, member.value) for member in enum_cls]


class OptionalBooleanField(BooleanField):
    """BooleanField that keeps its default when the key is absent from the payload."""

    false_values = (False, "false", "False", "0", "no", "")

    def process_formdata(self, valuelist):
        if not valuelist:
            return
        super().process_formdata(valuelist)


def DateTime(label=None, **kwargs):
    return DateTimeField(label, format=DATETIME_FORMATS, validators=[OptionalValue()], **kwargs)


def Text(max_length: int = 255, required: bool = False):
    validators = [DataRequired()] if required else [OptionalValue()]
    return StringField(validators=validators + [Length(max=max_length)])


def Notes():
    return TextAreaField(validators=[OptionalValue(), Length(max=5000)])


def Money(required: bool = False):
    first = InputRequired() if required else OptionalValue()
    return DecimalField(places=2, validators=[first, NumberRange(min=0)])


class ApiForm(FlaskForm):
    class Meta:
        csrf = False


# ---------------------------------------------------------------------
# Cases, transitions, auth
# ---------------------------------------------------------------------
class CaseForm(ApiForm):
    title = Text(required=True)
    method = SelectField(choices=_enum_choices(ProcurementMethod), coerce=ProcurementMethod, validators=[InputRequired()])


class TransitionForm(ApiForm):
    next_state = SelectField(choices=_enum_choices(CaseState), coerce=CaseState, validators=[InputRequired()])
    action = StringField(
        validators=[OptionalValue(), Length(max=80), Regexp(r"^[a-z][a-z0-9_]*$", message="Use snake_case")]
    )
    legal_basis = Text(500)
    override = OptionalBooleanField(default=False)


class ReasonForm(ApiForm):
    reason = StringField(validators=[DataRequired(message="Reason is required"), Length(max=2000)])


class LoginForm(ApiForm):
    email = StringField(validators=[DataRequired(), Regexp(EMAIL_PATTERN, message="Invalid email address"), Length(max=255)])
    password = PasswordField(validators=[DataRequired()])


# ---------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------
class RFQForm(ApiForm):
    rfq_number = Text(100)
    issued_at = DateTime()
    closing_at = DateTime()
    notes = Notes()


class QuotationForm(ApiForm):
    supplier_name = Text(required=True)
    amount = Money(required=True)
    is_responsive = OptionalBooleanField(default=True)
    submitted_at = DateTime()


class AbstractForm(ApiForm):
    notes = Notes()


class BidBulletinForm(ApiForm):
    bulletin_number = IntegerField(validators=[OptionalValue(), NumberRange(min=1)])
    title = Text()
    published_at = DateTime()
    notes = Notes()


class PreBidForm(ApiForm):
    scheduled_at = DateTime()
    # Not stored on the record; schedules the BID_OPENING reminder.
    bid_opening_at = DateTime()
    minutes_url = StringField(validators=[OptionalValue(), URL(require_tld=False), Length(max=500)])
    notes = Notes()


class BidForm(ApiForm):
    bidder_name = Text(required=True)
    amount = Money(required=True)
    is_responsive = OptionalBooleanField(default=True)
    submitted_at = DateTime()
    opened_at = DateTime()


class TWGForm(ApiForm):
    result = Text(required=True)
    notes = Notes()
    evaluated_at = DateTime()


class PostQualificationForm(ApiForm):
    lowest_responsive_bidder = Text()
    passed = OptionalBooleanField(default=False)
    notes = Notes()
    completed_at = DateTime()


class BACResolutionForm(ApiForm):
    resolution_number = Text(100)
    resolved_at = DateTime()
    notes = Notes()


class AwardForm(ApiForm):
    awarded_to = Text(required=True)
    amount = Money()
    notice_date = DateTime()


class ContractForm(ApiForm):
    contract_no = Text(100, required=True)
    amount = Money()
    signed_at = DateTime()


class NTPForm(ApiForm):
    issued_at = DateTime()
    days_to_comply = IntegerField(validators=[OptionalValue(), NumberRange(min=1, max=3650)])


class ProgressBillingForm(ApiForm):
    billing_number = Text(100)
    percent_complete = DecimalField(places=2, validators=[OptionalValue(), NumberRange(min=0, max=100)])
    amount = Money()
    billed_at = DateTime()


class InspectionFormBase(ApiForm):
    status = SelectField(choices=_enum_choices(InspectionStatus), coerce=InspectionStatus, validators=[InputRequired()])
    inspected_at = DateTime()
    notes = Notes()


class PMTInspectionForm(InspectionFormBase):
    pass


class InspectionForm(InspectionFormBase):
    inspector = Text()


class DeliveryForm(ApiForm):
    receipt_number = Text(100)
    delivered_at = DateTime()
    notes = Notes()


class AcceptanceForm(ApiForm):
    accepted_at = DateTime()
    officer = Text()


class ORSForm(ApiForm):
    ors_number = Text(100)
    prepared_at = DateTime()
    approved_at = DateTime()
    approved_by = Text()


class DVForm(ApiForm):
    dv_number = Text(100)
    prepared_at = DateTime()
    approved_at = DateTime()
    approved_by = Text()


class CheckForm(ApiForm):
    check_number = Text(100)
    prepared_at = DateTime()
    approved_at = DateTime()
    approved_by = Text()


class CheckAdviceForm(ApiForm):
    advice_number = Text(100)
    approved_at = DateTime()


class AttachmentForm(ApiForm):
    type = Text(80, required=True)
    url = StringField(validators=[DataRequired(), URL(require_tld=False), Length(max=1000)])
    file_name = Text()


# ---------------------------------------------------------------------
# Binding helpers
# ---------------------------------------------------------------------
def _form_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def to_formdata(data: Mapping[str, Any]) -> MultiDict:
    """Flatten a normalized JSON payload into form data. Nulls and nested values are dropped."""
    pairs = []
    for key, value in data.items():
        converted = _form_value(value)
        if converted is not None:
            pairs.append((key, converted))
    return MultiDict(pairs)


def bind_form(form_cls: Type[FlaskForm], data: Mapping[str, Any]) -> FlaskForm:
    """Instantiate and validate `form_cls` against `data`; raise ValidationError on failure."""
    form = form_cls(formdata=to_formdata(data))
    if not form.validate():
        raise ValidationError("Invalid payload", fields=form.errors)
    return form


def record_formdata(record: Any, field_names: Iterable[str]) -> Dict[str, Any]:
    """Current values of `record` for the given form fields (basis for partial updates)."""
    return {name: getattr(record, name) for name in field_names if hasattr(record, name)}


def column_values(form: FlaskForm, model, only: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Form data restricted to the model's columns (and to `only`, when given)."""
    columns = set(model.__table__.columns.keys())
    wanted = set(only) if only is not None else None
    return {
        name: field.data
        for name, field in form._fields.items()
        if name in columns and (wanted is None or name in wanted)
    }
