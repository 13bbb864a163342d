"""
proctrack/reports.py

Stage-duration report over the cases created in a calendar year.

Each span is measured in days between the dates recorded on two stage records
(RFQ issued, notice of award, contract signed, NTP issued, check approved). A case
contributes to a span only when both ends are recorded. Spans whose average exceeds
BOTTLENECK_DAYS are reported as bottlenecks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import selectinload

from .models import CaseState, ProcurementCase

BOTTLENECK_DAYS = 7

# (span label, start date, end date); None as start means the case creation time.
SPANS = (
    ("RFQ-Award", ("rfq", "issued_at"), ("award", "notice_date")),
    ("Award-Contract", ("award", "notice_date"), ("contract", "signed_at")),
    ("Contract-NTP", ("contract", "signed_at"), ("ntp", "issued_at")),
    ("NTP-Check", ("ntp", "issued_at"), ("check", "approved_at")),
    ("Total", None, ("check", "approved_at")),
)

COMPLETED_STATES = frozenset({CaseState.CHECK, CaseState.CHECK_ADVICE, CaseState.CLOSED})


def _stage_date(case: ProcurementCase, ref) -> Optional[datetime]:
    if ref is None:
        return case.created_at
    relation, column = ref
    record = getattr(case, relation)
    return getattr(record, column) if record is not None else None


def _days(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86400


def _summary(label: str, values: List[float]) -> Dict[str, object]:
    count = len(values)
    return {
        "stage": label,
        "avg": round(sum(values) / count, 2) if count else 0,
        "min": round(min(values), 2) if count else 0,
        "max": round(max(values), 2) if count else 0,
        "count": count,
    }


def workflow_report(year: int) -> Dict[str, object]:
    start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
    cases = (
        ProcurementCase.query.filter(ProcurementCase.created_at >= start, ProcurementCase.created_at < end)
        .options(*(selectinload(getattr(ProcurementCase, name)) for name in ("rfq", "award", "contract", "ntp", "check")))
        .all()
    )

    durations: Dict[str, List[float]] = {label: [] for label, _, _ in SPANS}
    completed = awarded = 0
    for case in cases:
        if CaseState(case.current_state) in COMPLETED_STATES:
            completed += 1
        if case.award is not None:
            awarded += 1
        for label, start_ref, end_ref in SPANS:
            begin, finish = _stage_date(case, start_ref), _stage_date(case, end_ref)
            if begin is not None and finish is not None:
                durations[label].append(_days(begin, finish))

    stats = [_summary(label, values) for label, values in durations.items()]
    return {
        "year": year,
        "total_cases": len(cases),
        "completed_count": completed,
        "awarded_count": awarded,
        "stats": stats,
        "bottlenecks": [{"stage": s["stage"], "avg": s["avg"]} for s in stats if s["avg"] > BOTTLENECK_DAYS],
    }
