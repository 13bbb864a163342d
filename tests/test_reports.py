"""Workflow stage-duration report."""

from datetime import datetime

from proctrack.extensions import db
from proctrack.models import RFQ, Award, CaseState, Contract, ProcurementCase, ProcurementMethod, Role


def add_case(created_at, state=CaseState.DRAFT, *records):
    case = ProcurementCase(
        title="Chairs", method=ProcurementMethod.SMALL_VALUE_RFQ, current_state=state, created_at=created_at
    )
    db.session.add(case)
    for record in records:
        record.case = case
        db.session.add(record)
    return case


def test_durations_and_bottlenecks(app, api):
    with app.app_context():
        add_case(
            datetime(2025, 1, 2),
            CaseState.CONTRACT,
            RFQ(issued_at=datetime(2025, 1, 5)),
            Award(awarded_to="Acme", notice_date=datetime(2025, 1, 20)),
            Contract(contract_no="C-1", signed_at=datetime(2025, 1, 22)),
        )
        add_case(datetime(2025, 6, 1), CaseState.RFQ_ISSUED, RFQ(issued_at=datetime(2025, 6, 2)))
        add_case(datetime(2024, 12, 31), CaseState.CLOSED)
        db.session.commit()

    resp = api("get", "/api/reports/workflow?year=2025", Role.PROCUREMENT_MANAGER)
    assert resp.status_code == 200
    data = resp.get_json()

    assert (data["total_cases"], data["awarded_count"], data["completed_count"]) == (2, 1, 0)
    stats = {row["stage"]: row for row in data["stats"]}
    assert stats["RFQ-Award"] == {"stage": "RFQ-Award", "avg": 15, "min": 15, "max": 15, "count": 1}
    assert stats["Award-Contract"]["avg"] == 2
    assert stats["Total"]["count"] == 0
    assert data["bottlenecks"] == [{"stage": "RFQ-Award", "avg": 15}]


def test_defaults_to_current_year(api):
    data = api("get", "/api/reports/workflow", Role.ADMIN).get_json()
    # The test clock is fixed in 2025.
    assert data["year"] == 2025
    assert data["total_cases"] == 0


def test_restricted_roles(api):
    assert api("get", "/api/reports/workflow", Role.BUDGET_MANAGER).status_code == 403
