"""
proctrack/errors.py

Error taxonomy for the case tracker and its JSON mapping.

Every domain failure is a ProcTrackError subclass carrying an HTTP status, a stable
machine-readable `code` and a human-readable `message`. Handlers registered by
`register_error_handlers(app)` render them as:

    {"error": "<code>", "message": "<text>", ...extra}

IMPORTANT:
- Handlers roll back the session before responding; nothing a failed request staged is kept.
- Unexpected exceptions are logged with traceback and rendered as a generic 500 body.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import jsonify
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException

from .extensions import db

logger = logging.getLogger(__name__)


class ProcTrackError(Exception):
    status_code = 500
    code = "internal_error"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class Unauthorized(ProcTrackError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required"


class Forbidden(ProcTrackError):
    status_code = 403
    code = "forbidden"
    message = "Forbidden"


class RateLimited(ProcTrackError):
    status_code = 429
    code = "rate_limited"
    message = "Rate limited"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class DuplicateRequest(ProcTrackError):
    status_code = 409
    code = "duplicate_request"
    message = "Duplicate request"


class ValidationError(ProcTrackError):
    status_code = 400
    code = "validation_error"
    message = "Invalid payload"

    def __init__(self, message: Optional[str] = None, fields: Optional[Dict[str, Any]] = None):
        super().__init__(message, fields=fields or {})
        self.fields = fields or {}


class NotFound(ProcTrackError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class TransitionError(ProcTrackError):
    """Transition rejected by the engine (illegal successor, backward move, missing prerequisite)."""

    status_code = 400
    code = "transition_error"
    message = "Transition not allowed"

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason, reason=reason or self.message)
        self.reason = reason or self.message


class LockedError(ProcTrackError):
    status_code = 423
    code = "locked"
    message = "Record is locked"


class ConcurrentModification(ProcTrackError):
    status_code = 409
    code = "concurrent_modification"
    message = "The case was modified by another request; reload and retry"


def _rollback():
    try:
        db.session.rollback()
    except Exception:  # pragma: no cover - rollback failure must not mask the original error
        logger.exception("Session rollback failed while handling an error")


def register_error_handlers(app):
    """Map domain errors, HTTP errors and unexpected failures to JSON responses."""

    @app.errorhandler(ProcTrackError)
    def handle_domain_error(exc: ProcTrackError):
        _rollback()
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.message)
        else:
            logger.info("Request rejected (%s): %s", exc.code, exc.message)
        response = jsonify(exc.to_dict())
        response.status_code = exc.status_code
        if isinstance(exc, RateLimited):
            response.headers["Retry-After"] = str(exc.retry_after)
        return response

    @app.errorhandler(StaleDataError)
    def handle_stale_data(exc: StaleDataError):
        return handle_domain_error(ConcurrentModification())

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        _rollback()
        code = (exc.name or "error").lower().replace(" ", "_")
        response = jsonify({"error": code, "message": exc.description})
        response.status_code = exc.code or 500
        return response

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return handle_http_error(exc)
        _rollback()
        logger.exception("Unhandled error")
        response = jsonify({"error": "internal_error", "message": "Internal server error"})
        response.status_code = 500
        return response
