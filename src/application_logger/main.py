import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

import pytz

from .settings import (
    Settings,
    acquire_run_lease,
    load_settings,
    load_state,
    release_run_lease,
    save_state,
)
from .email_client import GmailQueue
from .gemini_oracle import GeminiOracle
from .sheets_writer import (
    HEADERS,
    LEADS_HEADERS,
    HELPER_HEADERS,
    ApplicationSheet,
    LeadsSheet,
    ensure_sheet,
    open_spreadsheet,
    write_dashboard_helper,
)
from .processor import process_queue
from .leads import process_job_leads
from .stale_sweep import mark_stale_applications
from .aggregates import project
from .errors import RunLeaseError, TrackerError

logger = logging.getLogger(__name__)


def _tz(cfg: Settings):
    return pytz.timezone(cfg.app.get("timezone", "UTC"))


def _open_spreadsheet(cfg: Settings, state: dict):
    sh = open_spreadsheet(cfg.sheets["spreadsheet_name"], cfg.spreadsheet_id or state.get("spreadsheet_id"))
    state["spreadsheet_id"] = sh.id
    return sh


def _application_sheet(cfg: Settings, sh, dry_run: bool) -> ApplicationSheet:
    ws = ensure_sheet(sh, cfg.sheets["applications_tab"], HEADERS)
    return ApplicationSheet(ws, tz=_tz(cfg), dry_run=dry_run)


def _merge_ids(state: dict, key: str, new_ids: List[str]) -> None:
    state[key] = sorted(set(state.get(key) or []) | set(new_ids))


def refresh_dashboard(cfg: Settings, sh=None, dry_run: bool = False, store: Optional[ApplicationSheet] = None):
    state = load_state()
    sh = sh or _open_spreadsheet(cfg, state)
    store = store or _application_sheet(cfg, sh, dry_run)
    helper_ws = ensure_sheet(sh, cfg.sheets["helper_tab"], HELPER_HEADERS)
    views = project(store.get_rows())
    write_dashboard_helper(helper_ws, views, dry_run=dry_run)
    for name, value in views.metrics.items():
        logger.info("[DASHBOARD] %s = %s", name, round(value, 4) if isinstance(value, float) else value)
    return views


def run_applications(cfg: Settings, dry_run: bool = False):
    state = load_state()
    tz = _tz(cfg)
    sh = _open_spreadsheet(cfg, state)
    store = _application_sheet(cfg, sh, dry_run)
    helper_ws = ensure_sheet(sh, cfg.sheets["helper_tab"], HELPER_HEADERS)

    queue = GmailQueue(tz=tz, dry_run=dry_run)
    queue.ensure_labels([cfg.gmail["to_process_label"], cfg.gmail["processed_label"], cfg.gmail["manual_review_label"]])
    oracle = GeminiOracle.from_settings(cfg)
    if not oracle.enabled:
        logger.warning("[ORACLE] GEMINI_API_KEY not set; every message goes through the keyword rules")

    summary = process_queue(
        queue, store, oracle,
        processing=cfg.processing,
        labels=cfg.gmail,
        processed_ids=state.get("processed_ids", []),
        now=lambda: datetime.now(tz),
        publish=lambda views: write_dashboard_helper(helper_ws, views, dry_run=dry_run),
    )
    if not dry_run:
        _merge_ids(state, "processed_ids", summary.processed_ids)
        save_state(state)
    return summary


def run_leads(cfg: Settings, dry_run: bool = False):
    state = load_state()
    tz = _tz(cfg)
    oracle = GeminiOracle.from_settings(cfg)
    if not oracle.enabled:
        logger.error("[LEADS] GEMINI_API_KEY not set; job leads need the oracle. Skipping.")
        return None
    sh = _open_spreadsheet(cfg, state)
    sheet = LeadsSheet(ensure_sheet(sh, cfg.sheets["leads_tab"], LEADS_HEADERS), tz=tz, dry_run=dry_run)
    queue = GmailQueue(tz=tz, dry_run=dry_run)
    queue.ensure_labels([cfg.gmail["leads_to_process_label"], cfg.gmail["leads_processed_label"]])

    summary = process_job_leads(
        queue, sheet, oracle,
        leads_cfg=cfg.leads,
        labels=cfg.gmail,
        processed_ids=state.get("leads_processed_ids", []),
        max_runtime_s=cfg.processing["max_runtime_s"],
        now=lambda: datetime.now(tz),
    )
    if not dry_run:
        _merge_ids(state, "leads_processed_ids", summary.processed_ids)
        save_state(state)
    return summary


def run_stale_sweep(cfg: Settings, dry_run: bool = False, weeks: Optional[int] = None) -> int:
    state = load_state()
    sh = _open_spreadsheet(cfg, state)
    store = _application_sheet(cfg, sh, dry_run)
    count = mark_stale_applications(store, datetime.now(_tz(cfg)), int(weeks or cfg.processing["stale_weeks"]))
    if count:
        refresh_dashboard(cfg, sh=sh, dry_run=dry_run, store=store)
    if not dry_run:
        save_state(state)
    return count


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Job application email logger (Gmail -> Gemini -> Google Sheets)")
    parser.add_argument("command", nargs="?", default="process", choices=["process", "leads", "stale", "dashboard"],
                        help="process: application emails (default); leads: job-alert emails; "
                             "stale: reject long-silent applications; dashboard: rebuild helper tables")
    parser.add_argument("--dry-run", action="store_true", help="Do not write to Sheets or Gmail; print instead")
    parser.add_argument("--weeks", type=int, default=None, help="Staleness threshold for the stale command")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_settings(args.config)

    run_id = None
    try:
        if not args.dry_run:
            run_id = acquire_run_lease(int(cfg.processing["lease_ttl_s"]))
        if args.command == "process":
            run_applications(cfg, dry_run=args.dry_run)
        elif args.command == "leads":
            run_leads(cfg, dry_run=args.dry_run)
        elif args.command == "stale":
            run_stale_sweep(cfg, dry_run=args.dry_run, weeks=args.weeks)
        else:
            refresh_dashboard(cfg, dry_run=args.dry_run)
    except RunLeaseError as e:
        logger.error("[PROCESS] %s; not starting", e)
        return 2
    except TrackerError as e:
        logger.error("[PROCESS] %s", e)
        return 1
    finally:
        if run_id:
            release_run_lease(run_id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
