"""Derived views over the application table. Pure functions, no I/O."""
from collections import Counter
from datetime import date, timedelta
from typing import Dict, Iterable, List, Tuple

from .models import AggregateViews, TrackedApplication
from .statuses import (
    ACCEPTED_STATUS,
    APPLICATION_VIEWED_STATUS,
    ASSESSMENT_STATUS,
    DEFAULT_STATUS,
    FUNNEL_STAGES,
    INTERVIEW_STATUS,
    MANUAL_REVIEW_NEEDED,
    OFFER_STATUS,
    REJECTED_STATUS,
    normalize_status,
)


def _counted(records: Iterable[TrackedApplication]) -> List[TrackedApplication]:
    # a row counts as an application once it has a company cell, resolved or not
    return [r for r in records if (r.company or "").strip()]


def _status(value: str) -> str:
    return normalize_status(value) or (value or "").strip()


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def platform_counts(records: Iterable[TrackedApplication]) -> List[Tuple[str, int]]:
    counts = Counter((r.platform or "").strip() for r in records)
    counts.pop("", None)
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))


def weekly_counts(records: Iterable[TrackedApplication]) -> List[Tuple[date, int]]:
    counts = Counter(week_start(r.email_date.date()) for r in records if r.email_date is not None)
    return sorted(counts.items())


def funnel_counts(records: Iterable[TrackedApplication]) -> List[Tuple[str, int]]:
    """Every row entered the funnel as Applied; later stages count rows whose peak reached them."""
    rows = _counted(records)
    peaks = Counter(_status(r.peak_status) for r in rows)
    out = [(FUNNEL_STAGES[0], len(rows))]
    out.extend((stage, peaks.get(stage, 0)) for stage in FUNNEL_STAGES[1:])
    return out


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


def dashboard_metrics(records: Iterable[TrackedApplication]) -> Dict[str, float]:
    rows = _counted(records)
    total = len(rows)
    status = Counter(_status(r.status) for r in rows)
    peak = Counter(_status(r.peak_status) for r in rows)
    active = sum(1 for r in rows if _status(r.status) and _status(r.status) not in (REJECTED_STATUS, ACCEPTED_STATUS))
    manual = sum(
        1 for r in rows
        if MANUAL_REVIEW_NEEDED in (r.company.strip(), (r.job_title or "").strip(), (r.status or "").strip())
    )
    direct_rejects = sum(
        1 for r in rows if _status(r.peak_status) == DEFAULT_STATUS and _status(r.status) == REJECTED_STATUS
    )
    return {
        "total_applications": total,
        "active_applications": active,
        "peak_interviews": peak[INTERVIEW_STATUS],
        "peak_offers": peak[OFFER_STATUS],
        "interview_rate": _ratio(peak[INTERVIEW_STATUS], total),
        "offer_rate": _ratio(peak[OFFER_STATUS], total),
        "current_interviews": status[INTERVIEW_STATUS],
        "current_assessments": status[ASSESSMENT_STATUS],
        "total_rejections": status[REJECTED_STATUS],
        "apps_viewed_peak": peak[APPLICATION_VIEWED_STATUS],
        "manual_review": manual,
        "direct_reject_rate": _ratio(direct_rejects, total),
    }


def project(records: Iterable[TrackedApplication]) -> AggregateViews:
    """All views at once. An empty table yields empty views, not an error."""
    records = list(records)
    return AggregateViews(
        platform_counts=platform_counts(records),
        weekly_counts=weekly_counts(records),
        funnel_counts=funnel_counts(records),
        metrics=dashboard_metrics(records),
    )
