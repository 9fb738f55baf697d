import logging
import os
import re
from datetime import datetime
from typing import Any, Iterable, List, Optional, Set, Tuple

import dateparser
import gspread
import pytz

from .errors import StorageWriteError
from .models import AggregateViews, EmailMessage, JobLead, TrackedApplication
from .statuses import DEFAULT_PLATFORM, DEFAULT_STATUS

logger = logging.getLogger(__name__)

HEADERS = [
    "Processed Timestamp", "Email Date", "Platform", "Company", "Job Title", "Status", "Peak Status",
    "Last Update Date", "Email Subject", "Email Link", "Email ID", "Notes",
]
LEADS_HEADERS = [
    "Date Added", "Job Title", "Company", "Location", "Source", "Job URL", "Status", "Notes",
    "Applied Date", "Follow-up Date", "Source Email ID", "Processed Timestamp",
]
HELPER_HEADERS = ["Platform", "Count", "", "Week Starting", "Applications", "", "Stage", "Count"]

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_ROW_IN_RANGE = re.compile(r"![A-Z]+(\d+)")


def _get_client():
    sa_path = os.getenv("GSPREAD_SERVICE_ACCOUNT_JSON", "").strip()
    if sa_path:
        return gspread.service_account(filename=sa_path)
    return gspread.oauth(
        credentials_filename=os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "credentials", "client_secret.json"),
        authorized_user_filename=os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "credentials", "token.json"),
    )


def column_letter(one_based_index: int) -> str:
    if one_based_index <= 0:
        raise ValueError("one_based_index must be >= 1")
    out = []
    value = one_based_index
    while value > 0:
        value, remainder = divmod(value - 1, 26)
        out.append(chr(ord("A") + remainder))
    return "".join(reversed(out))


def format_datetime(value: Optional[datetime]) -> str:
    return value.strftime(DATETIME_FORMAT) if value else ""


def parse_datetime(value: Any, tz) -> Optional[datetime]:
    """Parse a cell value (as displayed by Sheets) into an aware datetime in ``tz``."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        parsed = dateparser.parse(text, settings={"PREFER_DATES_FROM": "past"})
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        return tz.localize(parsed)
    return parsed.astimezone(tz)


def record_to_row(record: TrackedApplication) -> List[str]:
    return [
        format_datetime(record.processed_timestamp),
        format_datetime(record.email_date),
        record.platform,
        record.company,
        record.job_title,
        record.status,
        record.peak_status,
        format_datetime(record.last_update_date),
        record.email_subject,
        record.email_link,
        record.email_id,
        record.notes,
    ]


def row_to_record(values: List[Any], row_number: int, tz) -> TrackedApplication:
    cells = [str(v).strip() if v is not None else "" for v in values]
    cells += [""] * (len(HEADERS) - len(cells))
    return TrackedApplication(
        processed_timestamp=parse_datetime(cells[0], tz),
        email_date=parse_datetime(cells[1], tz),
        platform=cells[2] or DEFAULT_PLATFORM,
        company=cells[3],
        job_title=cells[4],
        status=cells[5] or DEFAULT_STATUS,
        peak_status=cells[6],
        last_update_date=parse_datetime(cells[7], tz),
        email_subject=cells[8],
        email_link=cells[9],
        email_id=cells[10],
        notes=cells[11],
        row=row_number,
    )


def _appended_row(response: Any) -> Optional[int]:
    if isinstance(response, dict):
        rng = response.get("updates", {}).get("updatedRange", "")
        m = _ROW_IN_RANGE.search(rng)
        if m:
            return int(m.group(1))
    return None


def open_spreadsheet(name: str, spreadsheet_id: Optional[str] = None, client=None) -> gspread.Spreadsheet:
    gc = client or _get_client()
    if spreadsheet_id:
        try:
            return gc.open_by_key(spreadsheet_id)
        except gspread.SpreadsheetNotFound:
            logger.warning("[SHEET] cached spreadsheet id %s is gone; falling back to %r", spreadsheet_id, name)
    try:
        return gc.open(name)
    except gspread.SpreadsheetNotFound:
        logger.info("[SHEET] creating spreadsheet %r", name)
        return gc.create(name)


def ensure_sheet(sh, worksheet_name: str, headers: List[str] = HEADERS):
    try:
        ws = sh.worksheet(worksheet_name)
    except gspread.WorksheetNotFound:
        ws = sh.add_worksheet(title=worksheet_name, rows=1000, cols=len(headers))
        ws.append_row(headers)
        return ws
    first_row = ws.row_values(1)
    if first_row != headers:
        if not first_row:
            ws.append_row(headers)
        elif set(first_row) & set(headers):
            logger.warning("[SHEET] header row of %r differs; rewriting it", worksheet_name)
            ws.update(range_name="A1", values=[headers])
        else:
            logger.warning("[SHEET] row 1 of %r holds data; inserting headers above it", worksheet_name)
            ws.insert_row(headers, index=1)
    return ws


class ApplicationSheet:
    """Row store over the Applications tab. Rows are 1-based, row 1 is the header."""

    def __init__(self, ws, tz=pytz.UTC, dry_run: bool = False):
        self.ws = ws
        self.tz = tz
        self.dry_run = dry_run
        self._last_row = 1

    def get_rows(self) -> List[TrackedApplication]:
        values = self.ws.get_all_values()
        self._last_row = max(1, len(values))
        records = []
        for offset, row in enumerate(values[1:], start=2):
            if not any(str(c).strip() for c in row):
                continue
            records.append(row_to_record(row, offset, self.tz))
        return records

    def _range(self, row: int) -> str:
        return f"A{row}:{column_letter(len(HEADERS))}{row}"

    def append_row(self, record: TrackedApplication) -> int:
        values = record_to_row(record)
        if self.dry_run:
            self._last_row += 1
            logger.info("[DRY-RUN] Would append row %d: %s | %s | %s", self._last_row, record.company, record.job_title, record.status)
            return self._last_row
        try:
            response = self.ws.append_row(values, value_input_option="USER_ENTERED")
        except gspread.exceptions.APIError as e:
            raise StorageWriteError("append", str(e)) from e
        row = _appended_row(response) or self._last_row + 1
        self._last_row = max(self._last_row, row)
        return row

    def update_row(self, row: int, record: TrackedApplication) -> None:
        if self.dry_run:
            logger.info("[DRY-RUN] Would update row %d: %s | %s | %s", row, record.company, record.job_title, record.status)
            return
        try:
            self.ws.update(range_name=self._range(row), values=[record_to_row(record)], value_input_option="USER_ENTERED")
        except gspread.exceptions.APIError as e:
            raise StorageWriteError("update", str(e), row=row) from e

    def update_rows(self, records: Iterable[TrackedApplication]) -> int:
        """Write back several already-located records in one batch call."""
        batch = [{"range": self._range(r.row), "values": [record_to_row(r)]} for r in records if r.row]
        if not batch:
            return 0
        if self.dry_run:
            logger.info("[DRY-RUN] Would rewrite %d rows", len(batch))
            return len(batch)
        try:
            self.ws.batch_update(batch, value_input_option="USER_ENTERED")
        except gspread.exceptions.APIError as e:
            raise StorageWriteError("batch update", str(e)) from e
        return len(batch)


class LeadsSheet:
    def __init__(self, ws, tz=pytz.UTC, dry_run: bool = False):
        self.ws = ws
        self.tz = tz
        self.dry_run = dry_run

    def processed_email_ids(self) -> Set[str]:
        """Source email ids of written leads. Error rows do not count, so those emails are retried."""
        titles = self.ws.col_values(LEADS_HEADERS.index("Job Title") + 1)
        ids = self.ws.col_values(LEADS_HEADERS.index("Source Email ID") + 1)
        out = set()
        for i, value in enumerate(ids[1:], start=1):
            title = titles[i] if i < len(titles) else ""
            if value and value.strip() and title.strip() != "ERROR":
                out.add(value.strip())
        return out

    def _append(self, rows: List[List[str]]) -> None:
        if self.dry_run:
            for values in rows:
                logger.info("[DRY-RUN] Would append lead row: %s", values[:3])
            return
        try:
            self.ws.append_rows(rows, value_input_option="USER_ENTERED")
        except gspread.exceptions.APIError as e:
            raise StorageWriteError("append", str(e)) from e

    def append_leads(self, leads: Iterable[JobLead]) -> int:
        """Write all leads of one email in a single call so they land together or not at all."""
        rows = [[
            lead.date_added.isoformat() if lead.date_added else "",
            lead.job_title, lead.company, lead.location, lead.source, lead.job_url, lead.status, lead.notes,
            "", "", lead.source_email_id, format_datetime(lead.processed_timestamp),
        ] for lead in leads]
        if rows:
            self._append(rows)
        return len(rows)

    def append_error(self, message: EmailMessage, kind: str, detail: str, now: datetime) -> None:
        self._append([[
            message.date.date().isoformat(), "ERROR", kind, "", "", message.link, "Error",
            f"{(message.subject or '')[:200]} | {detail[:500]}", "", "", message.id, format_datetime(now),
        ]])


def helper_table(views: AggregateViews) -> List[List[Any]]:
    """Platform, weekly and funnel tables laid side by side under HELPER_HEADERS."""
    platform = views.platform_counts or [("No Data", 0)]
    weekly = [(d.strftime("%Y-%m-%d"), n) for d, n in views.weekly_counts] or [("No Date Data", 0)]
    funnel = views.funnel_counts
    height = max(len(platform), len(weekly), len(funnel))
    rows: List[List[Any]] = [list(HELPER_HEADERS)]

    def cell(pairs: List[Tuple], i: int) -> List[Any]:
        return list(pairs[i]) if i < len(pairs) else ["", ""]

    for i in range(height):
        rows.append(cell(platform, i) + [""] + cell(weekly, i) + [""] + cell(funnel, i))
    return rows


def write_dashboard_helper(ws, views: AggregateViews, dry_run: bool = False) -> None:
    table = helper_table(views)
    if dry_run:
        logger.info("[DRY-RUN] Would write %d helper rows", len(table) - 1)
        return
    ws.clear()
    ws.update(range_name="A1", values=table)
