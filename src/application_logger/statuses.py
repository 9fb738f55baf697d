from typing import Dict, List, Optional, Tuple

MANUAL_REVIEW_NEEDED = "N/A - Manual Review"
UPDATE_OTHER = "Update/Other"

DEFAULT_STATUS = "Applied"
APPLICATION_VIEWED_STATUS = "Application Viewed"
ASSESSMENT_STATUS = "Assessment/Screening"
INTERVIEW_STATUS = "Interview Scheduled"
OFFER_STATUS = "Offer Received"
REJECTED_STATUS = "Rejected"
ACCEPTED_STATUS = "Offer Accepted"
WITHDRAWN_STATUS = "Withdrawn"

DEFAULT_PLATFORM = "Other"

# Anything not listed here ranks below every known status.
UNKNOWN_RANK = -2

STATUS_HIERARCHY: Dict[str, int] = {
    MANUAL_REVIEW_NEEDED: -1,
    UPDATE_OTHER: 0,
    DEFAULT_STATUS: 1,
    APPLICATION_VIEWED_STATUS: 2,
    ASSESSMENT_STATUS: 3,
    INTERVIEW_STATUS: 4,
    OFFER_STATUS: 5,
    REJECTED_STATUS: 5,
    WITHDRAWN_STATUS: 5,
    ACCEPTED_STATUS: 6,
}

# Never recorded as a peak, whatever their rank.
PEAK_EXCLUDED_STATUSES = frozenset({
    REJECTED_STATUS,
    ACCEPTED_STATUS,
    WITHDRAWN_STATUS,
    MANUAL_REVIEW_NEEDED,
    UPDATE_OTHER,
})

# Statuses the stale sweep leaves alone.
FINAL_STATUSES = frozenset({REJECTED_STATUS, ACCEPTED_STATUS, WITHDRAWN_STATUS})

# News that replaces the current status even when it ranks lower.
INTERRUPTING_STATUSES = frozenset({REJECTED_STATUS, OFFER_STATUS})

# The only statuses the oracle may answer with.
ORACLE_STATUSES: Tuple[str, ...] = (
    DEFAULT_STATUS,
    REJECTED_STATUS,
    OFFER_STATUS,
    INTERVIEW_STATUS,
    ASSESSMENT_STATUS,
    APPLICATION_VIEWED_STATUS,
    UPDATE_OTHER,
    MANUAL_REVIEW_NEEDED,
)

FUNNEL_STAGES: Tuple[str, ...] = (
    DEFAULT_STATUS,
    APPLICATION_VIEWED_STATUS,
    ASSESSMENT_STATUS,
    INTERVIEW_STATUS,
    OFFER_STATUS,
)

REJECTION_KEYWORDS = [
    "unfortunately", "regret to inform", "not moving forward", "decided not to proceed",
    "other candidates", "filled the position", "thank you for your time but",
]
OFFER_KEYWORDS = ["pleased to offer", "offer of employment", "job offer", "formally offer you the position"]
INTERVIEW_KEYWORDS = [
    "invitation to interview", "schedule an interview", "interview request", "like to speak with you",
    "next steps involve an interview", "interview availability",
]
ASSESSMENT_KEYWORDS = [
    "assessment", "coding challenge", "online test", "technical screen",
    "next step is a skill assessment", "take a short test",
]
APPLICATION_VIEWED_KEYWORDS = [
    "application was viewed", "your application was viewed by", "recruiter viewed your application",
    "company viewed your application", "viewed your profile for the role",
]

# First category with a matching keyword wins; DEFAULT_STATUS when none match.
STATUS_KEYWORD_PRECEDENCE: List[Tuple[str, List[str]]] = [
    (REJECTED_STATUS, REJECTION_KEYWORDS),
    (OFFER_STATUS, OFFER_KEYWORDS),
    (INTERVIEW_STATUS, INTERVIEW_KEYWORDS),
    (ASSESSMENT_STATUS, ASSESSMENT_KEYWORDS),
    (APPLICATION_VIEWED_STATUS, APPLICATION_VIEWED_KEYWORDS),
]

_BY_LOWER = {s.lower(): s for s in STATUS_HIERARCHY}


def normalize_status(value: Optional[str]) -> Optional[str]:
    """Canonical spelling of a known status, or None if it is not in the vocabulary."""
    if not value:
        return None
    return _BY_LOWER.get(str(value).strip().lower())


def rank(status: Optional[str]) -> int:
    canonical = normalize_status(status)
    if canonical is None:
        return UNKNOWN_RANK
    return STATUS_HIERARCHY[canonical]


def is_peak_excluded(status: Optional[str]) -> bool:
    canonical = normalize_status(status)
    return canonical in PEAK_EXCLUDED_STATUSES


def is_terminal(status: Optional[str]) -> bool:
    return normalize_status(status) in FINAL_STATUSES


def is_sentinel(value: Optional[str]) -> bool:
    return not value or str(value).strip() == MANUAL_REVIEW_NEEDED
