from datetime import date, datetime
from types import SimpleNamespace

import gspread
import pytest
import pytz

from application_logger import sheets_writer as sw
from application_logger.errors import StorageWriteError
from application_logger.models import AggregateViews, EmailMessage, JobLead, TrackedApplication


class FakeWorksheet:
    def __init__(self, values=None, append_response=None, fail=False):
        self.values = values or [list(sw.HEADERS)]
        self.append_response = append_response
        self.fail = fail
        self.appended = []
        self.updates = []

    def _maybe_fail(self):
        if self.fail:
            response = SimpleNamespace(
                json=lambda: {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}},
                text="Quota exceeded",
            )
            raise gspread.exceptions.APIError(response)

    def get_all_values(self):
        return self.values

    def append_row(self, values, value_input_option=None):
        self._maybe_fail()
        self.appended.append(values)
        return self.append_response

    def update(self, range_name=None, values=None, value_input_option=None):
        self._maybe_fail()
        self.updates.append((range_name, values))

    def append_rows(self, values, value_input_option=None):
        self._maybe_fail()
        self.appended.extend(values)
        self.values.extend(values)

    def row_values(self, row):
        return self.values[row - 1] if row <= len(self.values) else []

    def col_values(self, col):
        return [r[col - 1] if col <= len(r) else "" for r in self.values]

    def insert_row(self, values, index=1):
        self.values.insert(index - 1, values)


def _row(*cells):
    return list(cells) + [""] * (len(sw.HEADERS) - len(cells))


def test_column_letter():
    assert sw.column_letter(1) == "A"
    assert sw.column_letter(len(sw.HEADERS)) == "L"
    assert sw.column_letter(27) == "AA"


def test_row_to_record_parses_cells():
    tz = pytz.timezone("America/New_York")
    cells = ["2025-05-16 10:00:00", "2025-05-15 09:30:00", "LinkedIn", "Acme", "Data Analyst", "Applied",
             "Applied", "2025-05-15 09:30:00", "Your application", "https://mail/x", "m1", "note"]
    record = sw.row_to_record(cells, 4, tz)
    assert record.row == 4
    assert record.company == "Acme"
    assert record.email_date == tz.localize(record.email_date.replace(tzinfo=None))
    assert record.email_date.hour == 9
    assert record.notes == "note"
    assert sw.record_to_row(record) == cells


def test_short_rows_are_padded():
    record = sw.row_to_record(["", "", "", "Acme"], 2, pytz.UTC)
    assert record.platform == "Other"
    assert record.status == "Applied"
    assert record.email_date is None


def test_get_rows_keeps_sheet_row_numbers():
    ws = FakeWorksheet([list(sw.HEADERS), _row("", "", "LinkedIn", "Acme"), _row(), _row("", "", "Indeed", "Globex")])
    rows = sw.ApplicationSheet(ws).get_rows()
    assert [(r.company, r.row) for r in rows] == [("Acme", 2), ("Globex", 4)]


def test_append_reads_row_from_response():
    ws = FakeWorksheet(append_response={"updates": {"updatedRange": "Applications!A7:L7"}})
    sheet = sw.ApplicationSheet(ws)
    record = TrackedApplication(company="Acme", job_title="Analyst", status="Applied", peak_status="Applied")
    assert sheet.append_row(record) == 7
    assert ws.appended[0][3] == "Acme"


def test_update_targets_the_row_range():
    ws = FakeWorksheet()
    record = TrackedApplication(company="Acme", job_title="Analyst", status="Rejected", peak_status="Applied")
    sw.ApplicationSheet(ws).update_row(5, record)
    assert ws.updates[0][0] == "A5:L5"
    assert ws.updates[0][1][0][5] == "Rejected"


def test_api_errors_become_storage_errors():
    ws = FakeWorksheet(fail=True)
    record = TrackedApplication(company="Acme", job_title="Analyst", status="Applied", peak_status="Applied")
    with pytest.raises(StorageWriteError) as excinfo:
        sw.ApplicationSheet(ws).update_row(3, record)
    assert excinfo.value.row == 3


def test_dry_run_writes_nothing():
    ws = FakeWorksheet([list(sw.HEADERS), _row("", "", "LinkedIn", "Acme")])
    sheet = sw.ApplicationSheet(ws, dry_run=True)
    sheet.get_rows()
    record = TrackedApplication(company="Globex", job_title="Analyst", status="Applied", peak_status="Applied")
    assert sheet.append_row(record) == 3
    sheet.update_row(2, record)
    assert ws.appended == [] and ws.updates == []


def test_helper_table_layout():
    views = AggregateViews(
        platform_counts=[("LinkedIn", 3)],
        weekly_counts=[(date(2025, 5, 12), 2), (date(2025, 5, 19), 1)],
        funnel_counts=[("Applied", 3), ("Application Viewed", 1)],
    )
    table = sw.helper_table(views)
    assert table[0] == sw.HELPER_HEADERS
    assert table[1] == ["LinkedIn", 3, "", "2025-05-12", 2, "", "Applied", 3]
    assert table[2] == ["", "", "", "2025-05-19", 1, "", "Application Viewed", 1]


def test_helper_table_empty():
    table = sw.helper_table(AggregateViews())
    assert table[1][:2] == ["No Data", 0]
    assert table[1][3:5] == ["No Date Data", 0]


def test_ensure_sheet_inserts_headers_above_data():
    ws = FakeWorksheet([_row("", "", "LinkedIn", "Acme")])
    sh = SimpleNamespace(worksheet=lambda name: ws)
    assert sw.ensure_sheet(sh, "Applications") is ws
    assert ws.values[0] == sw.HEADERS
    assert ws.values[1][3] == "Acme"
    assert ws.updates == []


def test_ensure_sheet_rewrites_outdated_header():
    old = list(sw.HEADERS[:-1])
    ws = FakeWorksheet([old, _row("", "", "LinkedIn", "Acme")])
    sw.ensure_sheet(SimpleNamespace(worksheet=lambda name: ws), "Applications")
    assert ws.updates == [("A1", [sw.HEADERS])]
    assert len(ws.values) == 2


def test_leads_of_one_email_are_written_in_one_call():
    ws = FakeWorksheet([list(sw.LEADS_HEADERS)])
    sheet = sw.LeadsSheet(ws)
    leads = [JobLead(job_title="Analyst", company="Acme", source_email_id="m1"),
             JobLead(job_title="Engineer", company="Globex", source_email_id="m1")]
    assert sheet.append_leads(leads) == 2
    assert [r[1] for r in ws.appended] == ["Analyst", "Engineer"]
    assert sheet.processed_email_ids() == {"m1"}


def test_error_rows_do_not_mark_an_email_processed():
    ws = FakeWorksheet([list(sw.LEADS_HEADERS)])
    sheet = sw.LeadsSheet(ws)
    message = EmailMessage(id="m2", thread_id="t1", subject="Jobs", sender="",
                           date=datetime(2025, 5, 12, tzinfo=pytz.UTC), body="")
    sheet.append_error(message, "Script Error (Leads)", "boom", datetime(2025, 5, 12, tzinfo=pytz.UTC))
    assert ws.appended[0][1] == "ERROR"
    assert ws.appended[0][10] == "m2"
    assert sheet.processed_email_ids() == set()


def test_failed_lead_batch_raises_storage_error():
    sheet = sw.LeadsSheet(FakeWorksheet(fail=True))
    with pytest.raises(StorageWriteError):
        sheet.append_leads([JobLead(job_title="Analyst", company="Acme", source_email_id="m1")])
