from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from .statuses import DEFAULT_PLATFORM, MANUAL_REVIEW_NEEDED


@dataclass
class TrackedApplication:
    company: str
    job_title: str
    status: str
    peak_status: str
    platform: str = DEFAULT_PLATFORM
    processed_timestamp: Optional[datetime] = None
    email_date: Optional[datetime] = None
    last_update_date: Optional[datetime] = None
    email_subject: str = ""
    email_link: str = ""
    email_id: str = ""          # most recent email that touched this row
    notes: str = ""
    row: Optional[int] = None   # 1-based sheet row, header is row 1


@dataclass
class EmailMessage:
    id: str
    thread_id: str
    subject: str
    sender: str
    date: datetime
    body: str

    @property
    def link(self) -> str:
        return f"https://mail.google.com/mail/u/0/#inbox/{self.id}"


@dataclass
class MailThread:
    id: str
    messages: List[EmailMessage]
    label_names: List[str] = field(default_factory=list)


@dataclass
class Extraction:
    company: str = MANUAL_REVIEW_NEEDED
    job_title: str = MANUAL_REVIEW_NEEDED
    status: Optional[str] = None
    platform: str = DEFAULT_PLATFORM
    source: str = "rules"       # oracle | rules
    email_date: Optional[datetime] = None
    email_id: str = ""
    email_subject: str = ""
    email_link: str = ""

    @property
    def needs_manual_review(self) -> bool:
        return self.company == MANUAL_REVIEW_NEEDED or self.job_title == MANUAL_REVIEW_NEEDED


@dataclass(frozen=True)
class OracleUnavailable:
    """The oracle could not give a trustworthy answer; the caller falls back to rules."""
    reason: str                 # no_api_key | empty_input | rate_limited | http_error | transport_error | blocked | empty_response | malformed
    detail: str = ""


class ThreadOutcome(str, Enum):
    DONE = "done"
    MANUAL = "manual"


@dataclass
class Reconciliation:
    action: str                 # "create" | "update"
    record: TrackedApplication
    index_key: str
    previous: Optional[TrackedApplication] = None

    @property
    def is_update(self) -> bool:
        return self.action == "update"


@dataclass
class AggregateViews:
    platform_counts: List[tuple] = field(default_factory=list)   # (platform, count)
    weekly_counts: List[tuple] = field(default_factory=list)     # (monday date, count)
    funnel_counts: List[tuple] = field(default_factory=list)     # (stage, count)
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.platform_counts and not self.weekly_counts


@dataclass
class RunSummary:
    fetched_threads: int = 0
    skipped_known: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    deferred: int = 0
    stopped_reason: Optional[str] = None    # budget | message_cap
    thread_outcomes: Dict[str, ThreadOutcome] = field(default_factory=dict)
    processed_ids: List[str] = field(default_factory=list)
    views: Optional[AggregateViews] = None


@dataclass
class JobLead:
    job_title: str
    company: str
    location: str = "N/A"
    source: str = "N/A"
    job_url: str = "N/A"
    notes: str = "N/A"
    date_added: Optional[date] = None
    status: str = "New"
    source_email_id: str = ""
    processed_timestamp: Optional[datetime] = None
