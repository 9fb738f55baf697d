from datetime import timedelta

from application_logger.models import TrackedApplication
from application_logger.stale_sweep import find_stale_applications, mark_stale_applications
from application_logger.statuses import MANUAL_REVIEW_NEEDED

from fakes import FakeStore, at

NOW = at(24 * 100)


def _app(status, weeks_ago, company="Acme"):
    return TrackedApplication(company=company, job_title="Analyst", status=status, peak_status="Application Viewed",
                              last_update_date=NOW - timedelta(weeks=weeks_ago))


def test_only_old_open_applications_go_stale():
    records = [
        _app("Application Viewed", 8, "Old"),
        _app("Applied", 3, "Fresh"),
        _app("Rejected", 20, "AlreadyRejected"),
        _app("Offer Accepted", 20, "Accepted"),
        _app(MANUAL_REVIEW_NEEDED, 20, "Manual"),
        _app("", 20, "Blank"),
    ]
    stale = find_stale_applications(records, NOW, weeks_threshold=7)
    assert [r.company for r in stale] == ["Old"]
    assert stale[0].status == "Rejected"
    assert stale[0].peak_status == "Application Viewed"
    assert stale[0].last_update_date == NOW
    assert stale[0].processed_timestamp == NOW


def test_rows_without_update_date_are_left_alone():
    record = TrackedApplication(company="Acme", job_title="A", status="Applied", peak_status="Applied")
    assert find_stale_applications([record], NOW) == []


def test_mark_stale_writes_back_rows():
    store = FakeStore([_app("Interview Scheduled", 10, "Old"), _app("Applied", 1, "New")])
    assert mark_stale_applications(store, NOW, weeks_threshold=7) == 1
    assert [r.status for r in store.records] == ["Rejected", "Applied"]
    assert store.records[0].row == 2
