"""Gemini-backed extraction of application details and job leads.

The oracle is treated as fallible: every failure mode (missing key, rate limit,
HTTP error, safety block, malformed JSON) comes back as an ``OracleUnavailable``
value instead of an exception, so the caller can fall back to the keyword rules.
"""
from __future__ import annotations

import json
import logging
import random
import re
import time
from typing import Any, Callable, List, Optional, Union

from google import genai
from google.genai import errors, types

from .models import Extraction, JobLead, OracleUnavailable
from .statuses import (
    ACCEPTED_STATUS,
    APPLICATION_VIEWED_STATUS,
    ASSESSMENT_STATUS,
    DEFAULT_STATUS,
    INTERVIEW_STATUS,
    MANUAL_REVIEW_NEEDED,
    OFFER_STATUS,
    ORACLE_STATUSES,
    REJECTED_STATUS,
    UPDATE_OTHER,
)

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("company_name", "job_title", "status")
LEAD_KEYS = ("jobTitle", "company", "location", "source", "jobUrl", "notes")
NOT_AVAILABLE = "N/A"

_SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold="BLOCK_MEDIUM_AND_ABOVE")
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

_STATUS_HINTS = {
    DEFAULT_STATUS: "application submitted, sent or received (first confirmation)",
    REJECTED_STATUS: "not moving forward, unfortunately, position filled, regret to inform",
    OFFER_STATUS: "offer of employment, pleased to offer, job offer",
    INTERVIEW_STATUS: "invitation to interview, schedule an interview, would like to speak with you",
    ASSESSMENT_STATUS: "online assessment, coding challenge, technical or skills test, take-home",
    APPLICATION_VIEWED_STATUS: "application or profile viewed by a recruiter or the company",
    UPDATE_OTHER: "general update (still reviewing, delayed, thanks for your patience)",
}


def build_application_prompt(subject: str, body: str, body_char_limit: int = 12000) -> str:
    """Prompt text for one email; the status vocabulary and sentinel are spelled out verbatim."""
    status_lines = "\n".join(f'- "{s}": {hint}' for s, hint in _STATUS_HINTS.items())
    snippet = (body or "")[:body_char_limit]
    m = MANUAL_REVIEW_NEEDED
    return f"""You extract job application updates from emails for a tracking spreadsheet.
Read the Subject and Body and return ONLY one JSON object with exactly the keys "company_name", "job_title" and "status". No markdown, no commentary.

Relevance: if the email is not about an application the recipient already submitted (newsletters, marketing, job alerts, webinars, security notices, invoices), set all three fields to "{m}".

"company_name": the hiring company named in the email, not the applicant tracking system (Greenhouse, Lever, Workday, Ashby...) and not the job board (LinkedIn, Indeed, Wellfound) unless it is the employer. Use "{m}" when unclear.
"job_title": the exact title applied for, as stated for this application in this email. Do not infer it from other listings. Use "{m}" when it is not stated.
"status": exactly one of the following strings, never anything else:
{status_lines}
Use "{m}" only when the email is application-related but fits none of them. Never use "{ACCEPTED_STATUS}".

Example:
Subject: Your application was sent to MycoWorks
Body: Your application for Data Architect was sent to MycoWorks. Applied on May 16.
Output: {{"company_name": "MycoWorks", "job_title": "Data Architect", "status": "{DEFAULT_STATUS}"}}

Example:
Subject: Join our webinar on Future Tech!
Body: Don't miss our exclusive webinar...
Output: {{"company_name": "{m}", "job_title": "{m}", "status": "{m}"}}

--- EMAIL ---
Subject: {subject or ""}
Body:
{snippet}
--- END EMAIL ---
Output JSON:
"""


def build_job_leads_prompt(body: str, body_char_limit: int = 30000) -> str:
    keys = ", ".join(f'"{k}"' for k in LEAD_KEYS)
    return f"""You extract job postings from job-alert emails.
Return ONLY a JSON array. Each element is an object with exactly these keys: {keys}.
- "jobTitle": the role title; "company": the hiring company; "location": e.g. "Remote" or "Boston, MA".
- "source": the board or channel the posting came from, e.g. "LinkedIn Job Alert".
- "jobUrl": a direct link to this posting.
- "notes": two or three key requirements, at most 150 characters.
Use "{NOT_AVAILABLE}" for any field that is not present. Return [] when the email has no postings.

Email Content:
---
{(body or "")[:body_char_limit]}
---
JSON Array Output:"""


def _strip_fences(text: str) -> str:
    text = (text or "").strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.I)
    text = re.sub(r"\s*```$", "", text)
    return text.strip()


def parse_application_response(text: str) -> Union[Extraction, OracleUnavailable]:
    """Strictly validate the model's JSON; any structural deviation means Unavailable."""
    cleaned = _strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return OracleUnavailable("malformed", f"not JSON: {e.msg}")
    if not isinstance(data, dict):
        return OracleUnavailable("malformed", f"expected object, got {type(data).__name__}")
    missing = [k for k in REQUIRED_KEYS if k not in data]
    if missing:
        return OracleUnavailable("malformed", f"missing keys: {', '.join(missing)}")
    values = {}
    for key in REQUIRED_KEYS:
        value = data[key]
        if value is not None and not isinstance(value, str):
            return OracleUnavailable("malformed", f"{key} is {type(value).__name__}, expected string")
        values[key] = (value or "").strip() or MANUAL_REVIEW_NEEDED

    status = values["status"]
    if status not in ORACLE_STATUSES:
        logger.warning("[ORACLE] status %r outside vocabulary; treating as unresolved", status)
        status = MANUAL_REVIEW_NEEDED
    return Extraction(
        company=values["company_name"],
        job_title=values["job_title"],
        status=status,
        source="oracle",
    )


def _lead_from(item: Any) -> Optional[JobLead]:
    if not isinstance(item, dict) or not (item.get("jobTitle") or item.get("company")):
        return None

    def field(key: str) -> str:
        value = item.get(key)
        return str(value).strip() if value not in (None, "") else NOT_AVAILABLE

    return JobLead(
        job_title=field("jobTitle"),
        company=field("company"),
        location=field("location"),
        source=field("source"),
        job_url=field("jobUrl"),
        notes=field("notes"),
    )


def parse_job_leads_response(text: str) -> Union[List[JobLead], OracleUnavailable]:
    cleaned = _strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return OracleUnavailable("malformed", f"not JSON: {e.msg}")
    if isinstance(data, dict):
        logger.warning("[ORACLE] leads output was a single object; treating it as one lead")
        data = [data]
    if not isinstance(data, list):
        return OracleUnavailable("malformed", f"expected array, got {type(data).__name__}")
    leads = []
    for item in data:
        lead = _lead_from(item)
        if lead is None:
            logger.debug("[ORACLE] skipped invalid lead item: %r", item)
            continue
        leads.append(lead)
    return leads


class GeminiOracle:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash",
        temperature: float = 0.2,
        max_output_tokens: int = 512,
        body_char_limit: int = 12000,
        max_attempts: int = 2,
        rate_limit_backoff_s: tuple = (5.0, 10.0),
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.body_char_limit = body_char_limit
        self.max_attempts = max(1, int(max_attempts))
        self.rate_limit_backoff_s = tuple(rate_limit_backoff_s)
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, cfg) -> "GeminiOracle":
        g = cfg.gemini
        return cls(
            api_key=cfg.gemini_api_key,
            model=g["model"],
            temperature=float(g["temperature"]),
            max_output_tokens=int(g["max_output_tokens"]),
            body_char_limit=int(g["body_char_limit"]),
            max_attempts=int(g["max_attempts"]),
            rate_limit_backoff_s=tuple(g["rate_limit_backoff_s"]),
        )

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.api_key and self.api_key.strip())

    def _get_client(self):
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _generate(self, prompt: str, max_output_tokens: int) -> Union[str, OracleUnavailable]:
        if not self.enabled:
            return OracleUnavailable("no_api_key")
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=max_output_tokens,
            top_p=0.95,
            top_k=40,
            safety_settings=_SAFETY_SETTINGS,
        )
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._get_client().models.generate_content(
                    model=self.model, contents=prompt, config=config,
                )
            except errors.APIError as e:
                if e.code == 429:
                    logger.warning("[ORACLE] rate limited (attempt %d/%d)", attempt, self.max_attempts)
                    if attempt < self.max_attempts:
                        low, high = self.rate_limit_backoff_s
                        self._sleep(random.uniform(low, high))
                        continue
                    return OracleUnavailable("rate_limited", f"gave up after {attempt} attempts")
                logger.error("[ORACLE] API error %s: %s", e.code, e.message)
                return OracleUnavailable("http_error", f"{e.code}: {e.message}")
            except Exception as e:
                logger.error("[ORACLE] transport error: %s", e)
                return OracleUnavailable("transport_error", str(e))

            feedback = getattr(response, "prompt_feedback", None)
            block_reason = getattr(feedback, "block_reason", None) if feedback else None
            if block_reason:
                logger.error("[ORACLE] prompt blocked: %s", block_reason)
                return OracleUnavailable("blocked", str(block_reason))
            text = getattr(response, "text", None)
            if not text:
                candidates = getattr(response, "candidates", None) or []
                finish = getattr(candidates[0], "finish_reason", None) if candidates else None
                if finish is not None and "SAFETY" in str(finish):
                    logger.error("[ORACLE] response blocked by safety filter")
                    return OracleUnavailable("blocked", str(finish))
                return OracleUnavailable("empty_response", f"finish_reason={finish}")
            return text
        return OracleUnavailable("rate_limited", f"gave up after {self.max_attempts} attempts")

    def extract_application(self, subject: str, body: str) -> Union[Extraction, OracleUnavailable]:
        if not (subject or "").strip() and not (body or "").strip():
            return OracleUnavailable("empty_input")
        prompt = build_application_prompt(subject, body, self.body_char_limit)
        logger.debug("[ORACLE] calling %s for subject %r (prompt %d chars)", self.model, (subject or "")[:100], len(prompt))
        text = self._generate(prompt, self.max_output_tokens)
        if isinstance(text, OracleUnavailable):
            return text
        result = parse_application_response(text)
        if isinstance(result, OracleUnavailable):
            logger.warning("[ORACLE] rejected response (%s): %s", result.detail, text[:200])
        else:
            logger.info('[ORACLE] C:"%s" T:"%s" S:"%s"', result.company, result.job_title, result.status)
        return result

    def extract_job_leads(self, body: str, body_char_limit: int = 30000,
                          max_output_tokens: int = 8192) -> Union[List[JobLead], OracleUnavailable]:
        if not (body or "").strip():
            return OracleUnavailable("empty_input")
        text = self._generate(build_job_leads_prompt(body, body_char_limit), max_output_tokens)
        if isinstance(text, OracleUnavailable):
            return text
        return parse_job_leads_response(text)
