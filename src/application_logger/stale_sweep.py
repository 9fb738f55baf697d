import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, List

from .models import TrackedApplication
from .statuses import REJECTED_STATUS, is_sentinel, is_terminal

logger = logging.getLogger(__name__)


def find_stale_applications(records: Iterable[TrackedApplication], now: datetime,
                            weeks_threshold: int = 7) -> List[TrackedApplication]:
    """Open applications with no update for ``weeks_threshold`` weeks, returned already marked Rejected.

    Peak status is left alone so the funnel still shows how far the application got.
    """
    cutoff = now - timedelta(weeks=weeks_threshold)
    stale = []
    for record in records:
        status = (record.status or "").strip()
        if not status or is_sentinel(status) or is_terminal(status):
            continue
        if record.last_update_date is None or record.last_update_date >= cutoff:
            continue
        logger.info("[STALE] row %s: %s | %s last updated %s, %r -> %r", record.row, record.company,
                    record.job_title, record.last_update_date.date(), status, REJECTED_STATUS)
        stale.append(replace(record, status=REJECTED_STATUS, last_update_date=now, processed_timestamp=now))
    return stale


def mark_stale_applications(store, now: datetime, weeks_threshold: int = 7) -> int:
    stale = find_stale_applications(store.get_rows(), now, weeks_threshold)
    if not stale:
        logger.info("[STALE] no stale applications older than %d weeks", weeks_threshold)
        return 0
    written = store.update_rows(stale)
    logger.info("[STALE] marked %d applications as %s", written, REJECTED_STATUS)
    return written
