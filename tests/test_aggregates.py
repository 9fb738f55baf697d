from datetime import date

from application_logger.aggregates import dashboard_metrics, funnel_counts, platform_counts, project, week_start, weekly_counts
from application_logger.models import TrackedApplication
from application_logger.statuses import MANUAL_REVIEW_NEEDED

from fakes import at


def _app(company, status, peak, platform="LinkedIn", hours=0.0, title="Analyst"):
    return TrackedApplication(company=company, job_title=title, status=status, peak_status=peak,
                              platform=platform, email_date=at(hours))


RECORDS = [
    _app("Acme", "Interview Scheduled", "Interview Scheduled", "LinkedIn", 0),      # Mon 2025-05-12
    _app("Globex", "Rejected", "Applied", "Indeed", 30),                            # Tue 2025-05-13
    _app("Initech", "Offer Received", "Offer Received", "LinkedIn", 24 * 8),        # Tue 2025-05-20
    _app("Umbrella", "Rejected", "Application Viewed", "Other", 24 * 9),
    _app(MANUAL_REVIEW_NEEDED, "Applied", "Applied", "LinkedIn", 24 * 10, title=MANUAL_REVIEW_NEEDED),
]


def test_week_start_is_monday():
    assert week_start(date(2025, 5, 18)) == date(2025, 5, 12)
    assert week_start(date(2025, 5, 12)) == date(2025, 5, 12)


def test_platform_counts_descending():
    assert platform_counts(RECORDS) == [("LinkedIn", 3), ("Indeed", 1), ("Other", 1)]


def test_weekly_counts_ascending():
    assert weekly_counts(RECORDS) == [(date(2025, 5, 12), 2), (date(2025, 5, 19), 3)]


def test_funnel_counts_peaks():
    assert funnel_counts(RECORDS) == [
        ("Applied", 5),
        ("Application Viewed", 1),
        ("Assessment/Screening", 0),
        ("Interview Scheduled", 1),
        ("Offer Received", 1),
    ]


def test_dashboard_metrics():
    m = dashboard_metrics(RECORDS)
    assert m["total_applications"] == 5
    assert m["active_applications"] == 3
    assert m["peak_interviews"] == 1
    assert m["peak_offers"] == 1
    assert m["interview_rate"] == 0.2
    assert m["total_rejections"] == 2
    assert m["manual_review"] == 1
    assert m["direct_reject_rate"] == 0.2
    assert m["apps_viewed_peak"] == 1


def test_empty_table_is_a_valid_result():
    views = project([])
    assert views.is_empty
    assert views.funnel_counts[0] == ("Applied", 0)
    assert views.metrics["interview_rate"] == 0.0
