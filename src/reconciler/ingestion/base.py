"""Abstract interfaces for attachment ingestion."""

import logging
import mimetypes
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import requests

from ..errors import NotFoundError, UnauthorizedError
from ..models import RawAttachment
from ..timeouts import TIMEOUTS

logger = logging.getLogger(__name__)

# Extensions mimetypes.guess_extension gets wrong or leaves out
_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "application/pdf": ".pdf",
    "application/xml": ".xml",
    "text/xml": ".xml",
}


def extension_for(mimetype: str) -> str:
    return _EXTENSIONS.get(mimetype) or mimetypes.guess_extension(mimetype) or ""


def ensure_extension(filename: str, mimetype: str) -> str:
    """Append an extension derived from the MIME type when the name has none."""
    if Path(filename).suffix:
        return filename
    return f"{filename}{extension_for(mimetype)}"


def unique_filename(filename: str) -> str:
    """Make a storage name that will not collide with earlier uploads."""
    path = Path(filename)
    return f"{path.stem}_{uuid.uuid4().hex[:8]}{path.suffix}"


def http_get(
    url: str,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, Any]] = None,
    timeout: float = TIMEOUTS.external_api,
) -> requests.Response:
    """GET with a timeout, mapping auth and not-found responses to pipeline errors."""
    response = requests.get(url, headers=headers, params=params, timeout=timeout)
    if response.status_code in (401, 403):
        raise UnauthorizedError(f"Request to {url.split('?')[0]} was rejected ({response.status_code})")
    if response.status_code == 404:
        raise NotFoundError(f"Resource not found: {url.split('?')[0]}")
    response.raise_for_status()
    return response


class AttachmentAdapter(ABC):
    """Turns a channel event into attachment bytes.

    Every channel produces the same RawAttachment so the rest of the
    pipeline does not care where a document came from. ``reference_id`` must
    be stable for the same source document, it is the deduplication key.
    """

    channel: str = ""

    @abstractmethod
    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        """Fetch the attachment described by a channel event.

        Args:
            team_id: Team that owns the channel
            event: Channel-specific event data (file id, filename, metadata)

        Returns:
            RawAttachment: Downloaded attachment
        """
        pass


class InboxProvider(ABC):
    """Abstract interface for syncing attachments from a connected mailbox."""

    provider: str = ""

    @abstractmethod
    def get_attachments(self, since: Optional[datetime], max_results: int) -> list[RawAttachment]:
        """Fetch attachments of messages received since a point in time.

        Args:
            since: Only consider messages after this time; None for a full sync
            max_results: Maximum number of messages to inspect

        Returns:
            list[RawAttachment]: Attachments with reference ids and sender info

        Raises:
            InboxAuthError: If the provider rejects the account credentials
            InboxSyncError: For other provider failures
        """
        pass

    @abstractmethod
    def close(self):
        """Close the connection."""
        pass
