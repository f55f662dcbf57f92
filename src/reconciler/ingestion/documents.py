"""E-invoice network and manual upload adapters."""

import hashlib
import logging
from typing import Any

from ..models import RawAttachment
from ..timeouts import TIMEOUTS
from .base import AttachmentAdapter, ensure_extension, http_get

logger = logging.getLogger(__name__)


class EInvoiceAdapter(AttachmentAdapter):
    """Fetches documents delivered through an e-invoicing access point."""

    channel = "einvoice"

    def __init__(self, api_url: str, api_key: str):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key

    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        document_id = event["file_id"]
        response = http_get(
            f"{self.api_url}/documents/{document_id}",
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=TIMEOUTS.file_transfer,
        )
        mimetype = (
            event.get("mimetype")
            or response.headers.get("Content-Type", "").split(";")[0].strip()
            or "application/pdf"
        )
        filename = ensure_extension(event.get("filename") or document_id, mimetype)
        logger.info(f"Downloaded e-invoice {document_id} ({len(response.content)} bytes)")

        return RawAttachment(
            team_id=team_id,
            data=response.content,
            mimetype=mimetype,
            filename=filename,
            reference_id=f"einvoice_{document_id}",
            source_metadata={"channel": self.channel, "document_id": document_id, **event.get("source_metadata", {})},
        )


class ManualUploadAdapter(AttachmentAdapter):
    """Wraps bytes uploaded directly by a user."""

    channel = "manual"

    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        return self.from_bytes(team_id, event["data"], event["filename"], event["mimetype"])

    def from_bytes(self, team_id: str, data: bytes, filename: str, mimetype: str) -> RawAttachment:
        digest = hashlib.sha256(data).hexdigest()[:16]
        filename = ensure_extension(filename, mimetype)
        return RawAttachment(
            team_id=team_id,
            data=data,
            mimetype=mimetype,
            filename=filename,
            reference_id=f"manual_{digest}_{filename}",
            source_metadata={"channel": self.channel},
        )
