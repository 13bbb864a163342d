"""
Procurement Case Routes (JSON API)

Provides:
- GET  /api/cases                         list (filters: state, method, query, limit, offset)
- POST /api/cases                         create a case in DRAFT
- GET  /api/cases/<id>                    case + allowed next states + edit/delete preview
- GET  /api/cases/<id>/timeline           activity log, oldest first
- POST /api/cases/<id>/transition         explicit state change (admin override supported)
- GET|POST         /api/cases/<id>/<stage>
- PATCH|DELETE     /api/cases/<id>/<stage>              (singleton stages)
- PATCH|DELETE     /api/cases/<id>/<stage>/<record_id>  (repeatable stages)

Request pipeline for mutating stage actions:
    role check -> rate limit -> payload validation -> Idempotency-Key -> load case
    -> transition check -> write record + state -> activity log -> reminders -> commit

IMPORTANT:
- Validation runs before the idempotency key is consumed: a client fixing a bad payload
  may retry with the same key.
- Each route owns its transaction: it commits on success; error handlers roll back.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import or_

from ...audit import log_activity, timeline
from ...errors import DuplicateRequest, Forbidden, NotFound, ValidationError
from ...extensions import db
from ...forms import CaseForm, ReasonForm, TransitionForm, bind_form, column_values, record_formdata
from ...idempotency import idempotency_key
from ...locks import edit_access
from ...models import CaseState, ChangeType, ProcurementCase, ProcurementMethod, Role
from ...rate_limit import enforce_rate_limit
from ...security import can_override_transitions, check_role, login_required_json, roles_required
from ...services import get_services
from ...stages import STAGE_BY_TARGET, STAGES, apply_transition, delete_stage, edit_stage, get_record, record_stage
from ...utils import normalize_payload, parse_optional_int
from ...workflow import allowed_next_states

logger = logging.getLogger(__name__)

cases_bp = Blueprint("cases", __name__, url_prefix="/api/cases")

CASE_CREATOR_ROLES = (Role.ADMIN, Role.PROCUREMENT_MANAGER, Role.BAC_SECRETARIAT)
DEFAULT_TRANSITION_ROLES = frozenset({Role.ADMIN, Role.PROCUREMENT_MANAGER})


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            raise ValidationError("Request body must be a JSON object")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _get_case(case_id: int) -> ProcurementCase:
    case = db.session.get(ProcurementCase, case_id)
    if case is None:
        raise NotFound("Case not found")
    return case


def _get_stage(slug: str):
    descriptor = STAGES.get(slug)
    if descriptor is None:
        raise NotFound(f"Unknown stage: {slug}")
    return descriptor


def _consume_idempotency_key(action: str, case_id) -> None:
    client_key = (request.headers.get("Idempotency-Key") or "").strip()
    if not client_key:
        return
    if not get_services().idempotency.consume(idempotency_key(action, case_id, client_key)):
        raise DuplicateRequest()


def _min_quotations() -> int:
    return current_app.config.get("MIN_QUOTATIONS", 3)


def _case_summary(case: ProcurementCase) -> Dict[str, Any]:
    data = case.to_dict()
    data["allowed_next_states"] = [state.value for state in allowed_next_states(case)]
    return data


def _permissions(case: ProcurementCase) -> Dict[str, Any]:
    role = current_user.role
    return {descriptor.key: edit_access(role, descriptor.key, case).to_dict() for descriptor in STAGES.values()}


def _parse_enum(enum_cls, raw: Any, name: str):
    if not raw:
        return None
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid {name}", fields={name: [f"Unknown value: {raw}"]}) from None


# ---------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------
@cases_bp.route("", methods=["GET"])
@login_required_json
def list_cases():
    query = ProcurementCase.query

    state = _parse_enum(CaseState, request.args.get("state"), "state")
    method = _parse_enum(ProcurementMethod, request.args.get("method"), "method")
    if state is not None:
        query = query.filter(ProcurementCase.current_state == state)
    if method is not None:
        query = query.filter(ProcurementCase.method == method)

    text = (request.args.get("query") or "").strip()
    if text:
        conditions = [ProcurementCase.title.ilike(f"%{text}%")]
        if text.isdigit():
            conditions.append(ProcurementCase.id == int(text))
        query = query.filter(or_(*conditions))

    limit = parse_optional_int(request.args.get("limit"))
    offset = parse_optional_int(request.args.get("offset"))
    query = query.order_by(ProcurementCase.created_at.desc(), ProcurementCase.id.desc())
    if limit is not None:
        query = query.limit(min(max(limit, 1), 100))
    if offset is not None:
        query = query.offset(max(offset, 0))

    return jsonify({"items": [_case_summary(case) for case in query.all()]})


@cases_bp.route("", methods=["POST"])
@roles_required(*CASE_CREATOR_ROLES)
def create_case():
    enforce_rate_limit("case_create")
    form = bind_form(CaseForm, normalize_payload(_json_body()))
    _consume_idempotency_key("create_case", "new")

    case = ProcurementCase(title=form.title.data.strip(), method=form.method.data, current_state=CaseState.DRAFT)
    db.session.add(case)
    db.session.flush()

    log_activity(
        case.id,
        "create_case",
        to_state=CaseState.DRAFT,
        change_type=ChangeType.CREATE,
        entity=case,
        payload={"title": case.title, "method": case.method.value},
    )
    db.session.commit()
    logger.info("Case %s created (%s)", case.id, case.method.value)
    return jsonify(_case_summary(case)), 201


@cases_bp.route("/<int:case_id>", methods=["GET"])
@login_required_json
def get_case(case_id: int):
    case = _get_case(case_id)
    data = _case_summary(case)
    data["permissions"] = _permissions(case)
    return jsonify(data)


@cases_bp.route("/<int:case_id>/timeline", methods=["GET"])
@login_required_json
def case_timeline(case_id: int):
    _get_case(case_id)
    return jsonify({"items": [entry.to_dict() for entry in timeline(case_id)]})


# ---------------------------------------------------------------------
# Explicit transition
# ---------------------------------------------------------------------
@cases_bp.route("/<int:case_id>/transition", methods=["POST"])
def transition_case(case_id: int):
    check_role(current_user, Role)
    body = _json_body()
    payload = body.get("payload") if isinstance(body.get("payload"), dict) else None
    data = normalize_payload(body)
    # Older clients nest nextState/legalBasis inside payload.
    if payload:
        for key, value in normalize_payload(payload).items():
            data.setdefault(key, value)

    descriptor = STAGE_BY_TARGET.get(_parse_enum(CaseState, data.get("next_state"), "next_state"))
    allowed_roles = descriptor.roles if descriptor is not None else DEFAULT_TRANSITION_ROLES
    override_requested = str(data.get("override", "")).lower() in {"true", "1", "yes"}

    role = check_role(current_user, set(allowed_roles) | ({Role.ADMIN} if override_requested else set()))
    if override_requested and not can_override_transitions(role):
        raise Forbidden("Admin override required")

    enforce_rate_limit("transition")
    form = bind_form(TransitionForm, data)
    _consume_idempotency_key("transition", case_id)

    case = _get_case(case_id)
    legal_basis = form.legal_basis.data or (descriptor.legal_basis if descriptor else None)
    result = apply_transition(
        case,
        form.next_state.data,
        action=form.action.data or "transition",
        legal_basis=legal_basis,
        payload=payload,
        is_override=bool(form.override.data),
        reason=(data.get("reason") or None),
        actor=current_user,
        min_quotations=_min_quotations(),
    )
    db.session.commit()

    response = _case_summary(case)
    response["transition"] = {
        "from_state": result.from_state.value,
        "to_state": result.to_state.value,
        "is_noop": result.is_noop,
        "is_override": result.is_override,
    }
    return jsonify(response)


# ---------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------
@cases_bp.route("/<int:case_id>/<slug>", methods=["GET"])
@login_required_json
def list_stage(case_id: int, slug: str):
    descriptor = _get_stage(slug)
    case = _get_case(case_id)
    if descriptor.repeatable:
        return jsonify({"items": [record.to_dict() for record in getattr(case, descriptor.relation)]})
    record = getattr(case, descriptor.relation)
    if record is None:
        raise NotFound(f"No {descriptor.key} recorded for this case")
    return jsonify(record.to_dict())


@cases_bp.route("/<int:case_id>/<slug>", methods=["POST"])
def create_stage(case_id: int, slug: str):
    descriptor = _get_stage(slug)
    check_role(current_user, descriptor.roles)
    enforce_rate_limit(descriptor.key)

    form = bind_form(descriptor.form, normalize_payload(_json_body()))
    _consume_idempotency_key(descriptor.key, case_id)

    case = _get_case(case_id)
    record = record_stage(case, descriptor, form, min_quotations=_min_quotations(), now=get_services().clock())
    db.session.commit()
    return jsonify(record.to_dict()), 201


def _load_for_change(case_id: int, slug: str, record_id: Optional[int]):
    descriptor = _get_stage(slug)
    check_role(current_user, Role)
    case = _get_case(case_id)
    if descriptor.repeatable and record_id is None:
        raise NotFound(f"{descriptor.key} id required")
    if not descriptor.repeatable and record_id is not None:
        raise NotFound(f"{descriptor.key} is a single record per case")
    record = get_record(case, descriptor, record_id)
    if record is None:
        raise NotFound(f"{descriptor.key} not found")
    return descriptor, case, record


@cases_bp.route("/<int:case_id>/<slug>", methods=["PATCH"])
@cases_bp.route("/<int:case_id>/<slug>/<int:record_id>", methods=["PATCH"])
def update_stage(case_id: int, slug: str, record_id: Optional[int] = None):
    descriptor, case, record = _load_for_change(case_id, slug, record_id)
    body = normalize_payload(_json_body())
    reason = bind_form(ReasonForm, body).reason.data.strip()
    enforce_rate_limit(f"{descriptor.key}_edit")

    changes = {key: value for key, value in body.items() if key != "reason"}
    field_names = list(descriptor.form(formdata=None)._fields)
    merged = {**record_formdata(record, field_names), **changes}
    form = bind_form(descriptor.form, merged)
    values = column_values(form, descriptor.model, only=changes.keys())
    if not values and not descriptor.reminder_fields.intersection(changes):
        raise ValidationError("No editable fields supplied")

    edit_stage(case, descriptor, record, values, reason, current_user, now=get_services().clock(), form=form)
    db.session.commit()
    return jsonify(record.to_dict())


@cases_bp.route("/<int:case_id>/<slug>", methods=["DELETE"])
@cases_bp.route("/<int:case_id>/<slug>/<int:record_id>", methods=["DELETE"])
def delete_stage_record(case_id: int, slug: str, record_id: Optional[int] = None):
    descriptor, case, record = _load_for_change(case_id, slug, record_id)
    body = normalize_payload(_json_body())
    reason = bind_form(ReasonForm, body).reason.data.strip()
    enforce_rate_limit(f"{descriptor.key}_delete")

    rolled_back_to = delete_stage(case, descriptor, record, reason, current_user)
    db.session.commit()
    return jsonify(
        {
            "ok": True,
            "current_state": CaseState(case.current_state).value,
            "rolled_back_to": rolled_back_to.value if rolled_back_to else None,
        }
    )
