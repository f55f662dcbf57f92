import imaplib
import json
from email.message import EmailMessage

import pytest
import requests

from reconciler.errors import InboxAuthError, InboxSyncError, UnauthorizedError, ValidationFailure, is_retryable
from reconciler.ingestion.chat import SlackAdapter, TelegramAdapter, WhatsAppAdapter
from reconciler.ingestion.documents import EInvoiceAdapter, ManualUploadAdapter
from reconciler.ingestion.gmail import GmailProvider
from reconciler.models import InboxAccount

from conftest import TEAM


def response(status: int = 200, body=None, content: bytes = b"", headers=None) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r._content = json.dumps(body).encode() if body is not None else content
    r.headers.update(headers or {})
    return r


@pytest.fixture
def http(monkeypatch):
    """Routes requests.get by URL; unknown URLs are a test error."""
    routes = {}

    def fake_get(url, headers=None, params=None, timeout=None):
        return routes[url]

    monkeypatch.setattr("reconciler.ingestion.base.requests.get", fake_get)
    return routes


# ============================================================================
# Chat and document adapters
# ============================================================================

def test_slack_download(http):
    http["https://slack.com/api/files.info"] = response(body={"ok": True, "file": {
        "mimetype": "application/pdf",
        "name": "receipt.pdf",
        "url_private_download": "https://files.slack.test/F123/receipt.pdf",
    }})
    http["https://files.slack.test/F123/receipt.pdf"] = response(content=b"%PDF-1.7")

    attachment = SlackAdapter("xoxb-token").download(TEAM, {"file_id": "F123", "source_metadata": {"user": "U1"}})

    assert attachment.reference_id == "slack_F123_receipt.pdf"
    assert attachment.data == b"%PDF-1.7"
    assert attachment.mimetype == "application/pdf"
    assert attachment.source_metadata == {"channel": "slack", "file_id": "F123", "user": "U1"}


def test_slack_rejected_token_is_unauthorized(http):
    http["https://slack.com/api/files.info"] = response(status=401)
    with pytest.raises(UnauthorizedError):
        SlackAdapter("revoked").download(TEAM, {"file_id": "F123"})


def test_telegram_photo_gets_a_name(http):
    http["https://api.telegram.org/bot123:abc/getFile"] = response(body={
        "ok": True, "result": {"file_path": "photos/file_1.jpg", "file_size": 8},
    })
    http["https://api.telegram.org/file/bot123:abc/photos/file_1.jpg"] = response(content=b"\xff\xd8jpeg")

    attachment = TelegramAdapter("123:abc").download(TEAM, {"file_id": "AgAD"})

    assert attachment.filename == "telegram_AgAD.jpg"
    assert attachment.mimetype == "image/jpeg"
    assert attachment.reference_id == "telegram_AgAD_telegram_AgAD.jpg"


def test_whatsapp_rejects_oversized_media(http):
    http["https://graph.facebook.com/v21.0/MEDIA1"] = response(body={
        "url": "https://lookaside.test/MEDIA1",
        "mime_type": "application/pdf",
        "file_size": 30 * 1024 * 1024,
    })
    with pytest.raises(ValidationFailure):
        WhatsAppAdapter("token").download(TEAM, {"file_id": "MEDIA1"})


def test_einvoice_uses_response_content_type(http):
    http["https://einvoice.test/api/documents/DOC-9"] = response(
        content=b"<Invoice/>", headers={"Content-Type": "application/xml; charset=utf-8"},
    )

    attachment = EInvoiceAdapter("https://einvoice.test/api/", "key").download(TEAM, {"file_id": "DOC-9"})

    assert attachment.filename == "DOC-9.xml"
    assert attachment.mimetype == "application/xml"
    assert attachment.reference_id == "einvoice_DOC-9"


def test_manual_upload_reference_follows_content():
    adapter = ManualUploadAdapter()
    first = adapter.from_bytes(TEAM, b"png bytes", "scan", "image/png")
    second = adapter.from_bytes(TEAM, b"png bytes", "scan", "image/png")
    different = adapter.from_bytes(TEAM, b"other bytes", "scan", "image/png")

    assert first.filename == "scan.png"
    assert first.reference_id == second.reference_id
    assert first.reference_id != different.reference_id


# ============================================================================
# Gmail
# ============================================================================

@pytest.fixture
def gmail_account():
    return InboxAccount(
        id="acct-1", team_id=TEAM, provider="gmail", email="billing@acme.test",
        access_token="old", refresh_token="refresh",
    )


def test_gmail_keeps_supported_attachments(gmail_account):
    message = EmailMessage()
    message["From"] = "Hosting GmbH <Billing@Hosting.example>"
    message["To"] = "billing@acme.test"
    message["Subject"] = "Your invoice"
    message["Message-ID"] = "<abc123@mail.example>"
    message.set_content("Invoice attached.")
    message.add_attachment(b"%PDF-1.7", maintype="application", subtype="octet-stream", filename="invoice.pdf")
    message.add_attachment("plain notes", subtype="plain", filename="notes.txt")

    attachments = GmailProvider(gmail_account)._message_attachments("7", message.as_bytes())

    assert len(attachments) == 1
    (attachment,) = attachments
    assert attachment.mimetype == "application/pdf"
    assert attachment.reference_id == "abc123@mail.example_invoice.pdf"
    assert attachment.sender_email == "billing@hosting.example"
    assert attachment.website == "hosting.example"
    assert attachment.source_metadata["subject"] == "Your invoice"


def test_gmail_rejected_refresh_requires_reauth(gmail_account, monkeypatch):
    monkeypatch.setattr(
        "reconciler.ingestion.gmail.requests.post",
        lambda url, data=None, timeout=None: response(status=400, body={"error": "invalid_grant"}),
    )
    provider = GmailProvider(gmail_account, "client", "secret")

    with pytest.raises(InboxAuthError) as excinfo:
        provider.refresh_access_token()

    assert excinfo.value.code == "invalid_grant"
    assert excinfo.value.requires_reauth


def test_gmail_refresh_network_failure_is_transient(gmail_account, monkeypatch):
    def unreachable(url, data=None, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("reconciler.ingestion.gmail.requests.post", unreachable)

    with pytest.raises(InboxAuthError) as excinfo:
        GmailProvider(gmail_account, "client", "secret").refresh_access_token()

    assert not excinfo.value.requires_reauth


def test_gmail_refresh_persists_new_token(gmail_account, monkeypatch):
    monkeypatch.setattr(
        "reconciler.ingestion.gmail.requests.post",
        lambda url, data=None, timeout=None: response(body={"access_token": "new", "expires_in": 3600}),
    )
    saved = []
    provider = GmailProvider(gmail_account, "client", "secret", token_updater=lambda *args: saved.append(args))

    assert provider.refresh_access_token() == "new"
    assert saved[0][0] == "new"
    assert saved[0][1] == gmail_account.expiry_date


def test_gmail_refresh_without_credentials(gmail_account):
    with pytest.raises(InboxAuthError) as excinfo:
        GmailProvider(gmail_account).refresh_access_token()
    assert excinfo.value.code == "missing_credentials"


class FakeImap:
    """IMAP session whose XOAUTH2 attempts raise the queued errors in order."""

    def __init__(self):
        self.auth_errors = []
        self.auth_attempts = 0
        self.logged_out = False

    def authenticate(self, mechanism, callback):
        self.auth_attempts += 1
        if self.auth_errors:
            raise self.auth_errors.pop(0)

    def logout(self):
        self.logged_out = True


@pytest.fixture
def imap(monkeypatch):
    server = FakeImap()
    monkeypatch.setattr("reconciler.ingestion.gmail.imaplib.IMAP4_SSL", lambda *args, **kwargs: server)
    return server


def test_gmail_dropped_connection_is_retryable(gmail_account, imap):
    imap.auth_errors = [imaplib.IMAP4.abort("socket error: EOF")]

    with pytest.raises(InboxSyncError) as excinfo:
        GmailProvider(gmail_account, "client", "secret").get_attachments(None, 10)

    assert excinfo.value.code == "imap_connection_lost"
    assert excinfo.value.retryable
    assert is_retryable(excinfo.value)
    assert imap.logged_out


def test_gmail_dropped_connection_after_refresh_is_retryable(gmail_account, imap, monkeypatch):
    monkeypatch.setattr(
        "reconciler.ingestion.gmail.requests.post",
        lambda url, data=None, timeout=None: response(body={"access_token": "new", "expires_in": 3600}),
    )
    imap.auth_errors = [imaplib.IMAP4.error("AUTHENTICATE failed"), ConnectionResetError("reset by peer")]

    with pytest.raises(InboxSyncError):
        GmailProvider(gmail_account, "client", "secret").get_attachments(None, 10)
    assert imap.auth_attempts == 2


def test_gmail_rejected_login_requires_reauth(gmail_account, imap, monkeypatch):
    monkeypatch.setattr(
        "reconciler.ingestion.gmail.requests.post",
        lambda url, data=None, timeout=None: response(body={"access_token": "new", "expires_in": 3600}),
    )
    imap.auth_errors = [imaplib.IMAP4.error("AUTHENTICATE failed")] * 2

    with pytest.raises(InboxAuthError) as excinfo:
        GmailProvider(gmail_account, "client", "secret").get_attachments(None, 10)

    assert excinfo.value.code == "imap_auth_failed"
    assert excinfo.value.requires_reauth


def test_gmail_refresh_rejection_with_html_body(gmail_account, monkeypatch):
    monkeypatch.setattr(
        "reconciler.ingestion.gmail.requests.post",
        lambda url, data=None, timeout=None: response(status=400, content=b"<html>Bad Request</html>"),
    )

    with pytest.raises(InboxAuthError) as excinfo:
        GmailProvider(gmail_account, "client", "secret").refresh_access_token()

    assert excinfo.value.code == "invalid_grant"
    assert excinfo.value.requires_reauth
