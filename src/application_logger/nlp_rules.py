import re
from typing import List, Optional, Pattern, Tuple

from .models import Extraction
from .statuses import DEFAULT_PLATFORM, DEFAULT_STATUS, MANUAL_REVIEW_NEEDED, STATUS_KEYWORD_PRECEDENCE

PLATFORM_DOMAIN_KEYWORDS = {
    "linkedin.com": "LinkedIn",
    "indeed.com": "Indeed",
    "wellfound.com": "Wellfound",
    "angel.co": "Wellfound",
    "otta.com": "Otta",
}

# ATS and mail providers: their domain says nothing about the hiring company.
IGNORED_DOMAINS = {
    "greenhouse.io", "lever.co", "myworkday.com", "icims.com", "ashbyhq.com", "smartrecruiters.com",
    "bamboohr.com", "taleo.net", "gmail.com", "google.com", "example.com",
}

_SENDER_NOISE = r"\b(?:careers?|recruit(?:ing|ment|er)?|talent(?: acquisition)?|hiring(?: team)?|jobs?|team|hr|notifications?|no-?reply)\b"

_END = r"(?=\s*(?:[.!?,;](?:\s|$)|\n|$))"
_COMPANY = r"(?P<company>[A-Z0-9][\w&'.\- ]{1,60}?)"
_TITLE = r"(?P<title>[A-Za-z0-9][\w&/()+#,\- ]{1,80}?)"

_PLATFORM_PATTERNS = {
    "LinkedIn": [
        rf"your application for {_TITLE} was sent to {_COMPANY}{_END}",
        rf"your application was sent to {_COMPANY}{_END}",
        rf"viewed your application for {_TITLE}{_END}",
        rf"(?:your application was viewed by|hiring team at) {_COMPANY}{_END}",
    ],
    "Indeed": [
        rf"indeed application:\s*{_TITLE}\s*$",
        rf"the following items were sent to {_COMPANY}{_END}",
        rf"application submitted\.?\s*\n?\s*{_TITLE}\s*\n",
    ],
    "Wellfound": [
        rf"your application to {_COMPANY} for the position of {_TITLE}(?: has been| was|{_END})",
        rf"application to {_COMPANY} successfully submitted",
    ],
}

_GENERIC_PATTERNS = [
    rf"application for (?:the )?{_TITLE} (?:position|role) at {_COMPANY}{_END}",
    rf"your application for (?:the )?{_TITLE} at {_COMPANY}{_END}",
    rf"invitation to interview:\s*{_TITLE} at {_COMPANY}(?: \(|{_END})",
    rf"{_COMPANY} would like to (?:schedule an interview|speak with you) (?:for|about) (?:the )?{_TITLE}(?: (?:position|role))?{_END}",
    rf"thank you for applying (?:to|at|with) {_COMPANY}{_END}",
    rf"thank you for your interest in {_COMPANY}{_END}",
    rf"your application (?:to|with) {_COMPANY}{_END}",
    rf"for the {_TITLE} (?:position|role)",
]


def _compile(patterns: List[str]) -> List[Pattern]:
    return [re.compile(p, flags=re.I | re.M) for p in patterns]


_COMPILED_PLATFORM = {name: _compile(pats) for name, pats in _PLATFORM_PATTERNS.items()}
_COMPILED_GENERIC = _compile(_GENERIC_PATTERNS)


def _clean(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = re.sub(r"\s+", " ", value).strip(" -—|:.\"'*")
    if len(value) < 2 or len(value) > 80:
        return None
    return value


def sender_domain(from_header: str) -> str:
    m = re.search(r"<([^>]+)>", from_header or "")
    address = m.group(1) if m else (from_header or "").strip()
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


def detect_platform(from_header: str) -> str:
    domain = sender_domain(from_header)
    if domain:
        for keyword, platform in PLATFORM_DOMAIN_KEYWORDS.items():
            if keyword in domain:
                return platform
    return DEFAULT_PLATFORM


def _is_ignored(domain: str) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in IGNORED_DOMAINS)


def company_from_sender(from_header: str) -> Optional[str]:
    """Best guess at the hiring company from the From header, skipping job boards and ATS senders."""
    domain = sender_domain(from_header)
    if not domain or _is_ignored(domain) or detect_platform(from_header) != DEFAULT_PLATFORM:
        return None
    m = re.search(r"^(.*?)(?:<|$)", from_header or "")
    name = m.group(1).strip().strip('"') if m else ""
    if name:
        name = re.sub(r"\bvia\b.*$", "", name, flags=re.I)
        name = re.sub(_SENDER_NOISE, "", name, flags=re.I)
        name = _clean(re.sub(r"\s{2,}", " ", name))
        if name and "@" not in name:
            return name
    labels = domain.split(".")
    core = labels[-2] if len(labels) >= 2 else labels[0]
    return _clean(core.capitalize())


def classify_status(subject: str, body: str) -> str:
    text = f"{subject}\n{body}".lower()
    for status, keywords in STATUS_KEYWORD_PRECEDENCE:
        if any(k in text for k in keywords):
            return status
    return DEFAULT_STATUS


def extract_company_and_title(subject: str, from_header: str, body: str, platform: str) -> Tuple[str, str]:
    patterns = _COMPILED_PLATFORM.get(platform, []) + _COMPILED_GENERIC
    company: Optional[str] = None
    title: Optional[str] = None
    for pattern in patterns:
        for text in (subject or "", body or ""):
            m = pattern.search(text)
            if not m:
                continue
            groups = m.groupdict()
            if company is None and groups.get("company"):
                company = _clean(groups["company"])
            if title is None and groups.get("title"):
                title = _clean(groups["title"])
        if company and title:
            break
    if company is None:
        company = company_from_sender(from_header)
    return company or MANUAL_REVIEW_NEEDED, title or MANUAL_REVIEW_NEEDED


def parse_email(subject: str, from_header: str, body: str, platform: Optional[str] = None) -> Extraction:
    platform = platform or detect_platform(from_header)
    company, title = extract_company_and_title(subject, from_header, body, platform)
    return Extraction(
        company=company,
        job_title=title,
        status=classify_status(subject, body),
        platform=platform,
        source="rules",
    )
