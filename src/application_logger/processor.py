"""One run over the application queue.

Fetching -> Sorting -> per-message processing -> Relabeling -> Aggregating.
The run only ever stops between messages: a message that has started is
either written and committed, or fails and stays retryable.
"""
import logging
import random
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import StorageWriteError
from .models import EmailMessage, Extraction, MailThread, OracleUnavailable, RunSummary, ThreadOutcome
from .nlp_rules import classify_status, detect_platform, parse_email
from .reconciler import ApplicationIndex, reconcile
from .settings import DEFAULT_GMAIL, DEFAULT_PROCESSING
from .statuses import DEFAULT_STATUS, UPDATE_OTHER, is_sentinel
from .aggregates import project

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_fields(message: EmailMessage, oracle=None) -> Extraction:
    """Oracle first, keyword rules when it is unavailable; always returns an Extraction."""
    platform = detect_platform(message.sender)
    result = oracle.extract_application(message.subject, message.body) if oracle is not None \
        else OracleUnavailable("no_api_key")

    if isinstance(result, OracleUnavailable):
        logger.info("[PROCESS] oracle unavailable for %s (%s); using rules", message.id, result.reason)
        extraction = parse_email(message.subject, message.sender, message.body, platform)
    else:
        extraction = result
        extraction.platform = platform
        status = extraction.status
        if not status or is_sentinel(status) or status == UPDATE_OTHER:
            keyword_status = classify_status(message.subject, message.body)
            if keyword_status != DEFAULT_STATUS:
                extraction.status = keyword_status
            elif not status:
                extraction.status = DEFAULT_STATUS

    extraction.status = extraction.status or DEFAULT_STATUS
    extraction.email_date = message.date
    extraction.email_id = message.id
    extraction.email_subject = message.subject
    extraction.email_link = message.link
    return extraction


def collect_new_messages(threads: Iterable[MailThread], known_ids: Set[str]) -> Tuple[List[Tuple[EmailMessage, str]], int]:
    """Unseen messages of all threads in ascending date order (ties by id), plus the skipped count."""
    pending: List[Tuple[EmailMessage, str]] = []
    skipped = 0
    for thread in threads:
        for message in thread.messages:
            if message.id in known_ids:
                skipped += 1
                continue
            pending.append((message, thread.id))
    pending.sort(key=lambda item: (item[0].date.timestamp(), item[0].id))
    return pending, skipped


def record_outcome(outcomes: Dict[str, ThreadOutcome], thread_id: str, outcome: ThreadOutcome) -> None:
    # manual is sticky for the thread
    if outcomes.get(thread_id) is not ThreadOutcome.MANUAL:
        outcomes[thread_id] = outcome


def stop_reason(started: float, clock: Callable[[], float], attempted: int, limits: Dict) -> Optional[str]:
    if clock() - started > float(limits["max_runtime_s"]):
        return "budget"
    if attempted >= int(limits["message_limit"]):
        return "message_cap"
    return None


def pace(limits: Dict, sleep: Callable[[float], None]) -> None:
    low, high = limits["pacing_ms"]
    sleep(random.uniform(low, high) / 1000.0)


def apply_thread_labels(queue, threads: Iterable[MailThread], outcomes: Dict[str, ThreadOutcome],
                        pending_threads: Set[str], labels: Optional[Dict] = None) -> Dict[str, str]:
    """Move finished threads out of the to-process queue. Returns thread id -> action taken."""
    labels = {**DEFAULT_GMAIL, **(labels or {})}
    to_process, processed, manual = labels["to_process_label"], labels["processed_label"], labels["manual_review_label"]
    actions: Dict[str, str] = {}
    for thread in threads:
        outcome = outcomes.get(thread.id)
        try:
            if thread.id in pending_threads:
                # still has unprocessed messages; only flag it if something already needs review
                if outcome is ThreadOutcome.MANUAL and manual not in thread.label_names:
                    queue.modify_labels(thread.id, add=[manual])
                    actions[thread.id] = "manual"
                else:
                    actions[thread.id] = "pending"
                continue
            if outcome is None:
                if manual in thread.label_names:
                    actions[thread.id] = "unchanged"
                    continue
                outcome = ThreadOutcome.DONE
            if outcome is ThreadOutcome.DONE:
                queue.modify_labels(thread.id, add=[processed], remove=[to_process])
                actions[thread.id] = "processed"
            else:
                if manual not in thread.label_names:
                    queue.modify_labels(thread.id, add=[manual])
                actions[thread.id] = "manual"
        except Exception as e:
            logger.error("[Gmail] relabel failed for thread %s: %s", thread.id, e)
            actions[thread.id] = "error"
    logger.info("[PROCESS] relabel: %d processed, %d manual, %d pending",
                sum(a == "processed" for a in actions.values()),
                sum(a == "manual" for a in actions.values()),
                sum(a == "pending" for a in actions.values()))
    return actions


def process_queue(queue, store, oracle=None, processing: Optional[Dict] = None, labels: Optional[Dict] = None,
                  processed_ids: Iterable[str] = (), clock: Callable[[], float] = time.monotonic,
                  sleep: Callable[[float], None] = time.sleep, now: Callable[[], datetime] = _utcnow,
                  publish: Optional[Callable] = None) -> RunSummary:
    limits = {**DEFAULT_PROCESSING, **(processing or {})}
    labels = {**DEFAULT_GMAIL, **(labels or {})}
    started = clock()
    summary = RunSummary()

    index = ApplicationIndex.build(store.get_rows())
    known = set(index.email_ids) | set(processed_ids)
    logger.info("[PROCESS] index has %d applications, %d known message ids", len(index), len(known))

    threads = queue.fetch_threads(labels["to_process_label"], int(limits["thread_limit"]))
    summary.fetched_threads = len(threads)
    pending, summary.skipped_known = collect_new_messages(threads, known)
    logger.info("[PROCESS] %d new messages in %d threads (%d already processed)",
                len(pending), len(threads), summary.skipped_known)

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
            logger.warning("[PROCESS] stopping early (%s); %d messages left for the next run", reason, len(rest))
            break
        attempted += 1
        try:
            extraction = extract_fields(message, oracle)
            result = reconcile(extraction, index, now())
            if result.is_update:
                store.update_row(result.previous.row, result.record)
                result.record.row = result.previous.row
                summary.updated += 1
            else:
                result.record.row = store.append_row(result.record)
                summary.created += 1
            index.commit(result)
            known.add(message.id)
            summary.processed_ids.append(message.id)
            summary.processed += 1
            outcome = ThreadOutcome.MANUAL if extraction.needs_manual_review else ThreadOutcome.DONE
            logger.info('[PROCESS] %s row %s: "%s" | "%s" | %s (%s, %s)', result.action, result.record.row,
                        result.record.company, result.record.job_title, result.record.status,
                        extraction.source, outcome.value)
        except StorageWriteError as e:
            logger.error("[SHEET] %s; message %s stays unprocessed", e, message.id)
            summary.errors += 1
            outcome = ThreadOutcome.MANUAL
        except Exception:
            logger.exception("[PROCESS] failed on message %s (thread %s)", message.id, thread_id)
            summary.errors += 1
            outcome = ThreadOutcome.MANUAL
        record_outcome(outcomes, thread_id, outcome)
        if position < len(pending) - 1:
            pace(limits, sleep)

    summary.thread_outcomes = dict(outcomes)
    apply_thread_labels(queue, threads, outcomes, pending_threads, labels)

    try:
        summary.views = project(store.get_rows())
        if publish is not None:
            publish(summary.views)
    except Exception as e:
        logger.error("[PROCESS] aggregate refresh failed: %s", e)

    logger.info("[PROCESS] done: %d processed (%d new, %d updated), %d errors, %d deferred",
                summary.processed, summary.created, summary.updated, summary.errors, summary.deferred)
    return summary
