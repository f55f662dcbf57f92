"""Gmail IMAP provider sync with OAuth2."""

import imaplib
import logging
import ssl
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests

from ..errors import InboxAuthError, InboxSyncError
from ..models import InboxAccount, RawAttachment
from ..processing.email_parser import EmailParser, sender_address, sender_domain
from ..timeouts import TIMEOUTS
from .base import InboxProvider

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"

SUPPORTED_ATTACHMENT_TYPES = frozenset({
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
    "image/tiff",
    "image/bmp",
})

TokenUpdater = Callable[[str, datetime], None]


def _attachment_mimetype(filename: str, content_type: str) -> str:
    # Mail clients often send PDFs as application/octet-stream
    if content_type == "application/octet-stream" and filename.lower().endswith(".pdf"):
        return "application/pdf"
    return content_type


def _oauth_error(response: requests.Response) -> str:
    """OAuth2 error code of a rejected token request; non-JSON bodies count as invalid_grant."""
    try:
        body = response.json()
    except ValueError:
        logger.warning(f"Token endpoint returned a non-JSON {response.status_code}: {response.text[:200]}")
        return "invalid_grant"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return "invalid_grant"


class GmailProvider(InboxProvider):
    """Gmail inbox provider using IMAP with OAuth2."""

    provider = "gmail"

    def __init__(
        self,
        account: InboxAccount,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_updater: Optional[TokenUpdater] = None,
    ):
        """Initialize Gmail provider.

        Args:
            account: Connected inbox account with OAuth2 tokens
            client_id: OAuth2 client ID (for token refresh)
            client_secret: OAuth2 client secret (for token refresh)
            token_updater: Called with (access_token, expiry) after a refresh
        """
        self.account = account
        self.access_token = account.access_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_updater = token_updater
        self._imap: Optional[imaplib.IMAP4_SSL] = None

    def _token_expired(self) -> bool:
        expiry = self.account.expiry_date
        if not self.access_token:
            return True
        if expiry is None:
            return False
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry <= datetime.now(timezone.utc) + timedelta(minutes=1)

    def _authenticate(self) -> None:
        auth_string = f"user={self.account.email}\x01auth=Bearer {self.access_token}\x01\x01"
        self._imap.authenticate("XOAUTH2", lambda x: auth_string)

    def _connect(self):
        """Connect to Gmail IMAP if not already connected."""
        if self._imap is not None:
            return

        if self._token_expired():
            self.refresh_access_token()

        try:
            self._imap = imaplib.IMAP4_SSL(
                "imap.gmail.com",
                ssl_context=ssl.create_default_context(),
                timeout=TIMEOUTS.external_api,
            )
        except OSError as e:
            raise InboxSyncError(f"Could not reach Gmail IMAP: {e}", code="imap_unreachable",
                                 provider=self.provider) from e

        try:
            self._authenticate()
        except (imaplib.IMAP4.abort, OSError) as e:
            self._connection_lost(e)
        except imaplib.IMAP4.error:
            # Stale token the expiry date did not reveal: refresh once and retry
            logger.info(f"IMAP auth failed for account {self.account.id}, refreshing token")
            self.refresh_access_token()
            try:
                self._authenticate()
            except (imaplib.IMAP4.abort, OSError) as e:
                self._connection_lost(e)
            except imaplib.IMAP4.error as e:
                self.close()
                raise InboxAuthError(str(e), code="imap_auth_failed", provider=self.provider,
                                     requires_reauth=True) from e

    def _connection_lost(self, error: Exception) -> None:
        # IMAP4.abort subclasses IMAP4.error; a dropped socket is not a rejected login
        self.close()
        raise InboxSyncError(f"IMAP connection lost: {error}", code="imap_connection_lost",
                             provider=self.provider) from error

    def get_attachments(self, since: Optional[datetime], max_results: int) -> list[RawAttachment]:
        """Fetch supported attachments from INBOX messages.

        Args:
            since: Only messages on or after this day; None for a full sync
            max_results: Maximum number of (most recent) messages to inspect

        Returns:
            list[RawAttachment]: Attachments keyed by message id and filename
        """
        self._connect()

        try:
            status, _ = self._imap.select("INBOX", readonly=True)
            if status != "OK":
                raise InboxSyncError(f"Failed to select INBOX: {status}", code="imap_select_failed",
                                     provider=self.provider)

            criteria = f"SINCE {since.strftime('%d-%b-%Y')}" if since else "ALL"
            status, data = self._imap.uid("SEARCH", None, criteria)
            if status != "OK":
                raise InboxSyncError(f"Failed to search: {status}", code="imap_search_failed",
                                     provider=self.provider)

            uids = data[0].split() if data and data[0] else []
            uids = uids[-max_results:]

            attachments = []
            for uid_bytes in uids:
                status, data = self._imap.uid("FETCH", uid_bytes, "(RFC822)")
                if status != "OK" or not data or data[0] is None:
                    continue
                attachments.extend(self._message_attachments(uid_bytes.decode(), data[0][1]))
        except (imaplib.IMAP4.abort, OSError) as e:
            self._connection_lost(e)

        logger.info(
            f"Found {len(attachments)} attachments in {len(uids)} messages "
            f"for account {self.account.id}"
        )
        return attachments

    def _message_attachments(self, uid: str, rfc822_data: bytes) -> list[RawAttachment]:
        parsed = EmailParser.parse(rfc822_data)
        message_key = (parsed.message_id or "").strip("<> ") or f"uid{uid}"

        results = []
        for attachment in parsed.attachments:
            mimetype = _attachment_mimetype(attachment.filename, attachment.content_type)
            if mimetype not in SUPPORTED_ATTACHMENT_TYPES:
                continue
            results.append(RawAttachment(
                team_id=self.account.team_id,
                data=attachment.data,
                mimetype=mimetype,
                filename=attachment.filename,
                reference_id=f"{message_key}_{attachment.filename}",
                website=sender_domain(parsed.from_address),
                sender_email=sender_address(parsed.from_address) or None,
                source_metadata={
                    "channel": "email",
                    "provider": self.provider,
                    "subject": parsed.subject,
                    "message_id": parsed.message_id,
                },
            ))
        return results

    def close(self):
        """Close IMAP connection."""
        if self._imap is not None:
            try:
                self._imap.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"Error closing IMAP connection: {e}")
            self._imap = None

    def refresh_access_token(self) -> str:
        """Refresh OAuth2 access token.

        Returns:
            str: New access token

        Raises:
            InboxAuthError: If the refresh is rejected (requires_reauth) or
                fails transiently (requires_reauth=False)
        """
        if not self.account.refresh_token or not self.client_id or not self.client_secret:
            raise InboxAuthError("Missing OAuth2 credentials for token refresh",
                                 code="missing_credentials", provider=self.provider)

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.account.refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = requests.post(TOKEN_URL, data=data, timeout=TIMEOUTS.external_api)
        except requests.RequestException as e:
            raise InboxAuthError(f"Token refresh request failed: {e}", code="token_refresh_failed",
                                 provider=self.provider, requires_reauth=False) from e

        if response.status_code in (400, 401):
            error = _oauth_error(response)
            raise InboxAuthError(f"Token refresh rejected: {error}", code=error, provider=self.provider,
                                 requires_reauth=True)
        if not response.ok:
            raise InboxAuthError(f"Token refresh failed with HTTP {response.status_code}",
                                 code="token_refresh_failed", provider=self.provider,
                                 requires_reauth=False)

        payload = response.json()
        self.access_token = payload["access_token"]
        expiry = datetime.now(timezone.utc) + timedelta(seconds=int(payload.get("expires_in", 3600)))
        self.account.expiry_date = expiry
        if self.token_updater is not None:
            self.token_updater(self.access_token, expiry)
        logger.info(f"Refreshed access token for account {self.account.id}")
        return self.access_token
