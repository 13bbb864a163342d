"""
Scheduled-job Routes

Provides:
- POST /api/cron/reminders  sweep due reminders and purge expired idempotency keys

SECURITY NOTE:
- Called by the platform scheduler with `Authorization: Bearer <CRON_SECRET>`.
  When CRON_SECRET is empty (development) the check is skipped.
"""

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from ...errors import Unauthorized
from ...reminders import sweep_due
from ...services import get_services

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


def _check_cron_secret() -> None:
    secret = current_app.config.get("CRON_SECRET") or ""
    if not secret:
        return
    supplied = request.headers.get("Authorization", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise Unauthorized("Invalid cron secret")


@cron_bp.route("/reminders", methods=["POST"])
def reminders():
    _check_cron_secret()
    services = get_services()

    sent = sweep_due()
    purged = services.idempotency.purge_expired(services.clock())
    services.rate_limiter.cleanup()

    logger.info("Cron sweep: %s reminders sent, %s idempotency keys purged", sent, purged)
    return jsonify({"processed": sent, "purged_idempotency_keys": purged})
