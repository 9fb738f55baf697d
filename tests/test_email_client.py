import base64
from unittest.mock import MagicMock

from application_logger.email_client import GmailQueue, extract_plain_text


def _b64(text):
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _message(msg_id, subject, body, internal_ms="1747310400000", labels=("Label_1",)):
    return {
        "id": msg_id,
        "threadId": "t1",
        "internalDate": internal_ms,
        "labelIds": list(labels),
        "payload": {
            "headers": [{"name": "Subject", "value": subject}, {"name": "From", "value": "Acme <jobs@acme.com>"}],
            "mimeType": "multipart/alternative",
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64(body)}},
                {"mimeType": "text/html", "body": {"data": _b64(f"<p>{body}</p>")}},
            ],
        },
    }


def _service(threads):
    service = MagicMock()
    users = service.users.return_value
    users.labels.return_value.list.return_value.execute.return_value = {"labels": [
        {"id": "Label_1", "name": "CareerSuite.AI/Applications/To Process"},
        {"id": "Label_2", "name": "CareerSuite.AI/Applications/Processed"},
    ]}
    users.threads.return_value.list.return_value.execute.return_value = {"threads": [{"id": t["id"]} for t in threads]}
    users.threads.return_value.get.return_value.execute.side_effect = threads
    return service


def test_extract_plain_text_prefers_plain_part():
    subject, sender, body = extract_plain_text(_message("m1", "Hello", "Thanks for applying\u200b to Acme"))
    assert subject == "Hello"
    assert sender == "Acme <jobs@acme.com>"
    assert body == "Thanks for applying to Acme"


def test_extract_plain_text_html_only():
    msg = {"payload": {"headers": [], "parts": [
        {"mimeType": "text/html", "body": {"data": _b64("<div>Interview<br>invite</div><style>p{}</style>")}},
    ]}}
    _, _, body = extract_plain_text(msg)
    assert "Interview" in body and "invite" in body
    assert "p{}" not in body


def test_fetch_threads_builds_messages_and_label_names():
    service = _service([{"id": "t1", "messages": [_message("m1", "Hi", "body one")]}])
    queue = GmailQueue(service=service)
    threads = queue.fetch_threads("CareerSuite.AI/Applications/To Process", 20)
    assert len(threads) == 1
    thread = threads[0]
    assert thread.label_names == ["CareerSuite.AI/Applications/To Process"]
    assert thread.messages[0].id == "m1"
    assert thread.messages[0].date.year == 2025
    assert thread.messages[0].link.endswith("#inbox/m1")


def test_fetch_unknown_label_returns_nothing():
    queue = GmailQueue(service=_service([]))
    assert queue.fetch_threads("Nope", 5) == []


def test_modify_labels_uses_ids():
    service = _service([])
    queue = GmailQueue(service=service)
    queue.modify_labels("t1", add=["CareerSuite.AI/Applications/Processed"],
                        remove=["CareerSuite.AI/Applications/To Process"])
    service.users.return_value.threads.return_value.modify.assert_called_once_with(
        userId="me", id="t1", body={"addLabelIds": ["Label_2"], "removeLabelIds": ["Label_1"]},
    )


def test_ensure_labels_creates_missing_ones():
    service = _service([])
    service.users.return_value.labels.return_value.create.return_value.execute.return_value = {"id": "Label_9"}
    queue = GmailQueue(service=service)
    labels = queue.ensure_labels(["CareerSuite.AI/Applications/To Process", "CareerSuite.AI/Applications/Manual Review"])
    assert labels["CareerSuite.AI/Applications/Manual Review"] == "Label_9"
    assert service.users.return_value.labels.return_value.create.call_count == 1


def test_dry_run_does_not_relabel():
    service = _service([])
    GmailQueue(service=service, dry_run=True).modify_labels("t1", add=["CareerSuite.AI/Applications/Processed"])
    service.users.return_value.threads.return_value.modify.assert_not_called()
