"""Fold one extraction into the tracked-application table.

``reconcile`` is pure: it decides create vs. update and computes the merged
record. The caller writes the row and only then calls ``ApplicationIndex.commit``
so a failed write leaves the index untouched.
"""
import hashlib
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import Extraction, Reconciliation, TrackedApplication
from .statuses import (
    ACCEPTED_STATUS,
    DEFAULT_STATUS,
    INTERRUPTING_STATUSES,
    MANUAL_REVIEW_NEEDED,
    is_peak_excluded,
    is_sentinel,
    normalize_status,
    rank,
)

logger = logging.getLogger(__name__)

MANUAL_KEY_PREFIX = "_manual_review_placeholder_"


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower().rstrip(".,;:")


def application_key(company: str, job_title: str) -> str:
    """Identity of one application: hash of the normalized company and title."""
    raw = f"{_norm(company)}|{_norm(job_title)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def _touched(record: TrackedApplication) -> tuple:
    ts = record.processed_timestamp
    return (ts.timestamp() if ts else float("-inf"), record.row or 0)


class ApplicationIndex:
    """Run-scoped view of the table, rebuilt from the sheet at the start of every run."""

    def __init__(self):
        self._by_company: Dict[str, List[TrackedApplication]] = {}
        self._manual: Dict[str, TrackedApplication] = {}
        self.email_ids: set = set()

    @classmethod
    def build(cls, records: Iterable[TrackedApplication]) -> "ApplicationIndex":
        index = cls()
        for record in records:
            if record.email_id:
                index.email_ids.add(record.email_id)
            index._add(record)
        return index

    def _add(self, record: TrackedApplication) -> None:
        company = _norm(record.company)
        if not company or is_sentinel(record.company) or company == "n/a":
            return
        self._by_company.setdefault(company, []).append(record)

    def _remove(self, record: TrackedApplication) -> None:
        for rows in self._by_company.values():
            rows[:] = [r for r in rows if r.row != record.row]

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._by_company.values()) + len(self._manual)

    def candidates(self, company: str) -> List[TrackedApplication]:
        return list(self._by_company.get(_norm(company), []))

    def find(self, company: str, job_title: str) -> Optional[TrackedApplication]:
        """Row this (company, title) should update, or None for a new application.

        A known title only ever matches the same title, or a row of that company whose
        title is still unresolved; an unknown title takes the most recently touched row.
        """
        if is_sentinel(company):
            return None
        rows = self.candidates(company)
        if not rows:
            return None
        if not is_sentinel(job_title):
            wanted = application_key(company, job_title)
            for r in rows:
                if application_key(r.company, r.job_title) == wanted:
                    return r
            rows = [r for r in rows if is_sentinel(r.job_title)]
            if not rows:
                return None
        return max(rows, key=_touched)

    def commit(self, result: Reconciliation) -> None:
        """Make a written row visible to later messages in the same run."""
        record = result.record
        if record.email_id:
            self.email_ids.add(record.email_id)
        if result.index_key.startswith(MANUAL_KEY_PREFIX):
            self._manual[result.index_key] = record
            return
        if result.previous is not None:
            self._remove(result.previous)
        self._add(record)


def _later(new: Optional[datetime], current: Optional[datetime]) -> bool:
    if new is None:
        return False
    if current is None:
        return True
    return new > current


def merged_status(current: str, incoming: str) -> str:
    current = normalize_status(current) or (current or "").strip() or DEFAULT_STATUS
    if current == ACCEPTED_STATUS and incoming != ACCEPTED_STATUS:
        return current
    if rank(incoming) >= rank(current) or incoming in INTERRUPTING_STATUSES:
        return incoming
    return current


def next_peak(peak: Optional[str], status: str) -> str:
    """Peak never moves down and never takes an excluded status."""
    peak = normalize_status(peak) or (peak or "").strip()
    if not peak or peak == MANUAL_REVIEW_NEEDED:
        peak = DEFAULT_STATUS
    if not is_peak_excluded(status) and rank(status) > rank(peak):
        return status
    return peak


def initial_peak(status: str) -> str:
    return DEFAULT_STATUS if is_peak_excluded(status) else status


def reconcile(extraction: Extraction, index: ApplicationIndex, now: datetime) -> Reconciliation:
    status = extraction.status or DEFAULT_STATUS
    existing = index.find(extraction.company, extraction.job_title)

    if existing is None:
        if is_sentinel(extraction.company):
            key = f"{MANUAL_KEY_PREFIX}{extraction.email_id}"
        else:
            key = application_key(extraction.company, extraction.job_title)
        record = TrackedApplication(
            company=extraction.company,
            job_title=extraction.job_title,
            status=status,
            peak_status=initial_peak(status),
            platform=extraction.platform,
            processed_timestamp=now,
            email_date=extraction.email_date,
            last_update_date=extraction.email_date,
            email_subject=extraction.email_subject,
            email_link=extraction.email_link,
            email_id=extraction.email_id,
        )
        return Reconciliation(action="create", record=record, index_key=key)

    record = replace(existing)
    record.processed_timestamp = now
    if _later(extraction.email_date, existing.email_date):
        record.email_date = extraction.email_date
    if _later(extraction.email_date, existing.last_update_date):
        record.last_update_date = extraction.email_date
    record.email_subject = extraction.email_subject
    record.email_link = extraction.email_link
    record.email_id = extraction.email_id
    record.platform = extraction.platform

    if not is_sentinel(extraction.company) and (
        is_sentinel(existing.company) or _norm(extraction.company) != _norm(existing.company)
    ):
        record.company = extraction.company
    if not is_sentinel(extraction.job_title) and (
        is_sentinel(existing.job_title) or _norm(extraction.job_title) != _norm(existing.job_title)
    ):
        record.job_title = extraction.job_title

    record.status = merged_status(existing.status, status)
    record.peak_status = next_peak(existing.peak_status, record.status)
    logger.debug("[RECONCILE] row %s: %s -> %s (peak %s -> %s)", existing.row, existing.status,
                 record.status, existing.peak_status, record.peak_status)
    return Reconciliation(
        action="update",
        record=record,
        index_key=application_key(record.company, record.job_title),
        previous=existing,
    )
