import os, base64, re, logging
from datetime import datetime, timezone
from typing import List, Dict, Any, Iterable, Optional, Tuple
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .models import EmailMessage, MailThread

logger = logging.getLogger(__name__)

CREDENTIALS_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "credentials")
CLIENT_SECRET_FILE = os.path.join(CREDENTIALS_DIR, "client_secret.json")
TOKEN_FILE = os.path.join(CREDENTIALS_DIR, "token.json")

# Request ALL scopes once so token.json works for Gmail labels and Sheets alike
SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

def _ensure_creds(scopes: List[str]) -> Credentials:
    os.makedirs(CREDENTIALS_DIR, exist_ok=True)
    creds: Optional[Credentials] = None
    if os.path.exists(TOKEN_FILE):
        creds = Credentials.from_authorized_user_file(TOKEN_FILE, scopes)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        else:
            flow = InstalledAppFlow.from_client_secrets_file(CLIENT_SECRET_FILE, scopes)
            creds = flow.run_local_server(port=0)
        with open(TOKEN_FILE, "w", encoding="utf-8") as token:
            token.write(creds.to_json())
    return creds

def get_gmail_service():
    creds = _ensure_creds(SCOPES)
    return build("gmail", "v1", credentials=creds)

def _get_header(headers: List[Dict[str, str]], name: str) -> str:
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value", "")
    return ""

def _decode_payload(data: str) -> str:
    # Gmail returns base64url-encoded data
    missing_padding = len(data) % 4
    if missing_padding:
        data += "=" * (4 - missing_padding)
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")

def _clean_text(s: str) -> str:
    s = re.sub(r"[\u200B-\u200D\uFEFF]", "", s or "")
    s = re.sub(r"&nbsp;", " ", s)
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\s+\n", "\n", s)
    return s.strip()

def extract_plain_text(message: Dict[str, Any]) -> Tuple[str, str, str]:
    """Returns: (subject, from_header, text). Prefers text/plain; HTML parts are used only when no plain part exists."""
    payload = message.get("payload", {})
    headers = payload.get("headers", [])
    subject = _get_header(headers, "Subject")
    from_header = _get_header(headers, "From")

    plain: List[str] = []
    html: List[str] = []
    def traverse(parts):
        for p in parts:
            mime = p.get("mimeType", "")
            if "parts" in p:
                traverse(p["parts"])
            elif mime == "text/plain" and "data" in p.get("body", {}):
                plain.append(_decode_payload(p["body"]["data"]))
            elif mime == "text/html" and "data" in p.get("body", {}):
                text = _decode_payload(p["body"]["data"])
                text = re.sub(r"(?is)<(script|style)[^>]*>.*?</\1>", " ", text)
                text = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</tr>", "\n", text)
                html.append(re.sub("<[^<]+?>", " ", text))

    if "parts" in payload:
        traverse(payload["parts"])
    else:
        body = payload.get("body", {})
        if "data" in body:
            plain.append(_decode_payload(body["data"]))

    body_text = "\n".join(plain or html)
    return _clean_text(subject), _clean_text(from_header), _clean_text(body_text)

def to_email_message(message: Dict[str, Any], tz=timezone.utc) -> EmailMessage:
    subject, from_header, body = extract_plain_text(message)
    internal_date_ms = int(message.get("internalDate", "0"))
    return EmailMessage(
        id=message["id"],
        thread_id=message.get("threadId", ""),
        subject=subject,
        sender=from_header,
        date=datetime.fromtimestamp(internal_date_ms / 1000, tz=timezone.utc).astimezone(tz),
        body=body,
    )


class GmailQueue:
    """Label-driven mail queue: threads carrying a label are work items."""

    def __init__(self, service=None, tz=timezone.utc, dry_run: bool = False):
        self._service = service
        self.tz = tz
        self.dry_run = dry_run
        self._label_ids: Dict[str, str] = {}

    @property
    def service(self):
        if self._service is None:
            self._service = get_gmail_service()
        return self._service

    def _load_labels(self) -> Dict[str, str]:
        if not self._label_ids:
            resp = self.service.users().labels().list(userId="me").execute()
            self._label_ids = {l["name"]: l["id"] for l in resp.get("labels", [])}
        return self._label_ids

    def label_id(self, name: str) -> Optional[str]:
        return self._load_labels().get(name)

    def ensure_labels(self, names: Iterable[str]) -> Dict[str, str]:
        labels = self._load_labels()
        for name in names:
            if name in labels:
                continue
            if self.dry_run:
                logger.info("[DRY-RUN] Would create Gmail label %r", name)
                continue
            created = self.service.users().labels().create(
                userId="me",
                body={"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"},
            ).execute()
            labels[name] = created["id"]
            logger.info("[Gmail] created label %r", name)
        return labels

    def fetch_threads(self, label: str, limit: int) -> List[MailThread]:
        label_id = self.label_id(label)
        if label_id is None:
            logger.warning("[Gmail] label %r does not exist; nothing to fetch", label)
            return []
        try:
            resp = self.service.users().threads().list(userId="me", labelIds=[label_id], maxResults=limit).execute()
        except HttpError as e:
            logger.error("[Gmail] HttpError listing %r: %s", label, e)
            return []
        names_by_id = {v: k for k, v in self._load_labels().items()}
        threads: List[MailThread] = []
        for ref in resp.get("threads", [])[:limit]:
            try:
                full = self.service.users().threads().get(userId="me", id=ref["id"], format="full").execute()
            except HttpError as e:
                logger.error("[Gmail] HttpError fetching thread %s: %s", ref["id"], e)
                continue
            messages = [to_email_message(m, self.tz) for m in full.get("messages", [])]
            label_ids = set()
            for m in full.get("messages", []):
                label_ids.update(m.get("labelIds", []))
            threads.append(MailThread(
                id=ref["id"],
                messages=messages,
                label_names=sorted(names_by_id[i] for i in label_ids if i in names_by_id),
            ))
        logger.info("[Gmail] fetched %d threads from %r", len(threads), label)
        return threads

    def modify_labels(self, thread_id: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        add_ids = [self.label_id(n) for n in add]
        remove_ids = [self.label_id(n) for n in remove]
        if None in add_ids:
            raise ValueError(f"unknown label in {list(add)}")
        remove_ids = [i for i in remove_ids if i]
        if self.dry_run:
            logger.info("[DRY-RUN] Would relabel thread %s: +%s -%s", thread_id, list(add), list(remove))
            return
        self.service.users().threads().modify(
            userId="me", id=thread_id, body={"addLabelIds": add_ids, "removeLabelIds": remove_ids},
        ).execute()
