"""Job-alert emails -> rows on the Potential Job Leads tab."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Set

from .models import OracleUnavailable, RunSummary, ThreadOutcome
from .processor import collect_new_messages, pace, record_outcome, stop_reason
from .settings import DEFAULT_GMAIL, DEFAULT_LEADS, DEFAULT_PROCESSING

logger = logging.getLogger(__name__)

_UNUSABLE_TITLES = {"", "n/a", "error"}


def process_job_leads(queue, sheet, oracle, leads_cfg: Optional[Dict] = None, labels: Optional[Dict] = None,
                      processed_ids: Iterable[str] = (), max_runtime_s: float = DEFAULT_PROCESSING["max_runtime_s"],
                      clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep,
                      now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> RunSummary:
    limits = {**DEFAULT_LEADS, **(leads_cfg or {}), "max_runtime_s": max_runtime_s}
    labels = {**DEFAULT_GMAIL, **(labels or {})}
    started = clock()
    summary = RunSummary()

    known: Set[str] = sheet.processed_email_ids() | set(processed_ids)
    threads = queue.fetch_threads(labels["leads_to_process_label"], int(limits["thread_limit"]))
    summary.fetched_threads = len(threads)
    pending, summary.skipped_known = collect_new_messages(threads, known)
    logger.info("[LEADS] %d new messages in %d threads", len(pending), len(threads))

    outcomes: Dict[str, ThreadOutcome] = {}
    pending_threads: Set[str] = set()
    attempted = 0
    for position, (message, thread_id) in enumerate(pending):
        reason = stop_reason(started, clock, attempted, limits)
        if reason:
            rest = pending[position:]
            summary.stopped_reason = reason
            summary.deferred = len(rest)
            pending_threads.update(t for _, t in rest)
            logger.warning("[LEADS] stopping early (%s); %d messages left", reason, len(rest))
            break
        attempted += 1
        outcome = ThreadOutcome.DONE
        try:
            if not (message.body or "").strip():
                logger.info("[LEADS] message %s has no body; nothing to extract", message.id)
            else:
                result = oracle.extract_job_leads(message.body, int(limits["body_char_limit"]),
                                                  int(limits["max_output_tokens"]))
                if isinstance(result, OracleUnavailable):
                    logger.error("[LEADS] oracle failed for %s: %s %s", message.id, result.reason, result.detail)
                    sheet.append_error(message, "Gemini API Call Fail (Leads)", f"{result.reason}: {result.detail}", now())
                    summary.errors += 1
                    outcome = ThreadOutcome.MANUAL
                else:
                    batch = []
                    for lead in result:
                        if lead.job_title.strip().lower() in _UNUSABLE_TITLES:
                            logger.debug("[LEADS] skipped lead without a title: %r", lead)
                            continue
                        lead.date_added = message.date.date()
                        lead.source_email_id = message.id
                        lead.processed_timestamp = now()
                        batch.append(lead)
                    summary.created += sheet.append_leads(batch)
                    for lead in batch:
                        logger.info('[LEADS] + "%s" at "%s" (%s)', lead.job_title, lead.company, lead.location)
            if outcome is ThreadOutcome.DONE:
                known.add(message.id)
                summary.processed_ids.append(message.id)
                summary.processed += 1
        except Exception as e:
            logger.exception("[LEADS] failed on message %s (thread %s)", message.id, thread_id)
            summary.errors += 1
            outcome = ThreadOutcome.MANUAL
            try:
                sheet.append_error(message, "Script Error (Leads)", str(e), now())
            except Exception as write_error:
                logger.error("[LEADS] could not record the error row for %s: %s", message.id, write_error)
        record_outcome(outcomes, thread_id, outcome)
        if position < len(pending) - 1:
            pace(limits, sleep)

    summary.thread_outcomes = dict(outcomes)
    for thread in threads:
        if thread.id in pending_threads or outcomes.get(thread.id) is ThreadOutcome.MANUAL:
            continue
        try:
            queue.modify_labels(thread.id, add=[labels["leads_processed_label"]],
                                remove=[labels["leads_to_process_label"]])
        except Exception as e:
            logger.error("[Gmail] relabel failed for leads thread %s: %s", thread.id, e)

    logger.info("[LEADS] done: %d messages, %d leads written, %d errors, %d deferred",
                summary.processed, summary.created, summary.errors, summary.deferred)
    return summary
