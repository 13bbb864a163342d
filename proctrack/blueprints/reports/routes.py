"""
Report Routes

Provides:
- GET /api/reports/workflow?year=YYYY  stage durations and bottlenecks for cases created that year
"""

from flask import Blueprint, jsonify, request

from ...models import Role
from ...reports import workflow_report
from ...security import roles_required
from ...services import get_services
from ...utils import parse_optional_int

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.route("/workflow", methods=["GET"])
@roles_required(Role.ADMIN, Role.PROCUREMENT_MANAGER, Role.BAC_SECRETARIAT)
def workflow():
    year = parse_optional_int(request.args.get("year")) or get_services().clock().year
    return jsonify(workflow_report(year))
