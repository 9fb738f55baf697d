import os, json, uuid, yaml
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from dotenv import load_dotenv

from .errors import RunLeaseError

CONFIG_PATH = os.environ.get(
    "IAL_CONFIG",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config.yaml")
)
STATE_PATH = os.environ.get(
    "IAL_STATE",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "data", "state.json")
)

load_dotenv()

LABEL_ROOT = "CareerSuite.AI"

DEFAULT_GMAIL = {
    "to_process_label": f"{LABEL_ROOT}/Applications/To Process",
    "processed_label": f"{LABEL_ROOT}/Applications/Processed",
    "manual_review_label": f"{LABEL_ROOT}/Applications/Manual Review",
    "leads_to_process_label": f"{LABEL_ROOT}/Leads/To Process",
    "leads_processed_label": f"{LABEL_ROOT}/Leads/Processed",
}
DEFAULT_GEMINI = {
    "model": "gemini-2.5-flash",
    "temperature": 0.2,
    "max_output_tokens": 512,
    "body_char_limit": 12000,
    "max_attempts": 2,
    "rate_limit_backoff_s": [5.0, 10.0],
}
DEFAULT_SHEETS = {
    "spreadsheet_name": "CareerSuite.ai Data",
    "applications_tab": "Applications",
    "helper_tab": "DashboardHelperData",
    "leads_tab": "Potential Job Leads",
}
DEFAULT_PROCESSING = {
    "thread_limit": 20,
    "message_limit": 50,
    "max_runtime_s": 320,
    "pacing_ms": [200, 300],
    "stale_weeks": 7,
    "lease_ttl_s": 600,
}
DEFAULT_LEADS = {
    "thread_limit": 10,
    "message_limit": 15,
    "body_char_limit": 30000,
    "max_output_tokens": 8192,
    "pacing_ms": [1500, 2500],
}


@dataclass
class Settings:
    app: Dict[str, Any]
    gmail: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_GMAIL))
    gemini: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_GEMINI))
    sheets: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SHEETS))
    processing: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PROCESSING))
    leads: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_LEADS))
    gemini_api_key: Optional[str] = os.environ.get("GEMINI_API_KEY")
    spreadsheet_id: Optional[str] = os.environ.get("GOOGLE_SHEETS_SPREADSHEET_ID")


def _merged(defaults: Dict[str, Any], block: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = dict(defaults)
    out.update(block or {})
    return out


def load_settings(path: Optional[str] = None) -> Settings:
    path = path or CONFIG_PATH
    cfg: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    # optional blocks fall back to the built-in defaults key by key
    cfg.setdefault("app", {})
    cfg["gmail"] = _merged(DEFAULT_GMAIL, cfg.get("gmail"))
    cfg["gemini"] = _merged(DEFAULT_GEMINI, cfg.get("gemini"))
    cfg["sheets"] = _merged(DEFAULT_SHEETS, cfg.get("sheets"))
    cfg["processing"] = _merged(DEFAULT_PROCESSING, cfg.get("processing"))
    cfg["leads"] = _merged(DEFAULT_LEADS, cfg.get("leads"))
    return Settings(
        **cfg,
        gemini_api_key=os.environ.get("GEMINI_API_KEY"),
        spreadsheet_id=os.environ.get("GOOGLE_SHEETS_SPREADSHEET_ID"),
    )


def load_state(path: Optional[str] = None) -> dict:
    path = path or STATE_PATH
    if not os.path.exists(path):
        return {"spreadsheet_id": None, "processed_ids": [], "leads_processed_ids": [], "run_lease": None}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_state(state: dict, path: Optional[str] = None) -> None:
    path = path or STATE_PATH
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)


def acquire_run_lease(ttl_s: int, path: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Claim the single-run lease in the state store; raises RunLeaseError if a live lease exists."""
    now = now or datetime.now(timezone.utc)
    state = load_state(path)
    lease = state.get("run_lease")
    if lease:
        expires_at = datetime.fromisoformat(lease["expires_at"])
        if expires_at > now:
            raise RunLeaseError(lease.get("run_id", "?"), lease["expires_at"])
    run_id = uuid.uuid4().hex
    state["run_lease"] = {
        "run_id": run_id,
        "expires_at": (now + timedelta(seconds=ttl_s)).isoformat(timespec="seconds"),
    }
    save_state(state, path)
    return run_id


def release_run_lease(run_id: str, path: Optional[str] = None) -> None:
    state = load_state(path)
    lease = state.get("run_lease")
    if lease and lease.get("run_id") == run_id:
        state["run_lease"] = None
        save_state(state, path)
