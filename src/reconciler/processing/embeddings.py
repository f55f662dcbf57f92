"""embed-inbox: embedding generation with an idempotency guard."""

import logging
from typing import Optional

from ..errors import NotFoundError
from ..jobs.base import JobContext, Processor
from ..models import InboxEmbedding, InboxItem, InboxStatus
from ..schemas import EmbedInboxPayload
from ..semantic.inference import EmbeddingClient
from ..storage.database import DatabaseClient
from ..timeouts import TIMEOUTS, with_timeout

logger = logging.getLogger(__name__)

# Statuses from which an item may enter or leave "analyzing"
EMBEDDABLE_STATUSES = frozenset({
    InboxStatus.NEW,
    InboxStatus.PROCESSING,
    InboxStatus.ANALYZING,
    InboxStatus.PENDING,
})


def prepare_inbox_text(inbox: InboxItem) -> Optional[str]:
    """Text that represents an inbox item for semantic matching.

    Uses the fields a bank statement line is most likely to echo: the
    merchant name, its website domain and the sender's mail domain.
    """
    parts = []
    if inbox.display_name:
        parts.append(inbox.display_name.strip())

    domains = []
    if inbox.website:
        domain = inbox.website.lower().removeprefix("https://").removeprefix("http://")
        domains.append(domain.removeprefix("www.").split("/")[0])
    if inbox.sender_email and "@" in inbox.sender_email:
        domains.append(inbox.sender_email.rsplit("@", 1)[1].strip().lower())
    for domain in domains:
        if domain and domain not in " ".join(parts).lower():
            parts.append(domain)

    if inbox.invoice_number:
        parts.append(inbox.invoice_number.strip())
    text = " ".join(p for p in parts if p)
    return text or None


class EmbedInboxProcessor(Processor):
    """Generates and stores the embedding for one inbox item."""

    name = "embed-inbox"
    payload_schema = EmbedInboxPayload

    def __init__(self, db: DatabaseClient, embedder: EmbeddingClient):
        self.db = db
        self.embedder = embedder

    def should_process(self, payload: EmbedInboxPayload, ctx: JobContext) -> bool:
        if self.db.get_inbox_embedding(payload.inbox_id) is None:
            return True
        logger.info(f"Inbox {payload.inbox_id} already has an embedding, skipping")
        self.db.update_inbox_status(payload.inbox_id, InboxStatus.PENDING, expected=EMBEDDABLE_STATUSES)
        return False

    def process(self, payload: EmbedInboxPayload, ctx: JobContext) -> dict:
        inbox = self.db.get_inbox_by_id(payload.inbox_id, payload.team_id)
        if inbox is None:
            raise NotFoundError(f"Inbox item {payload.inbox_id} not found for team {payload.team_id}")

        if not self.db.update_inbox_status(inbox.id, InboxStatus.ANALYZING, expected=EMBEDDABLE_STATUSES):
            logger.info(f"Inbox {inbox.id} is {inbox.status}, not embedding")
            return {"inbox_id": inbox.id, "embedded": False}

        try:
            text = prepare_inbox_text(inbox)
            if not text:
                logger.warning(f"Inbox {inbox.id} has no text to embed")
                self._finish(inbox.id)
                return {"inbox_id": inbox.id, "embedded": False}

            result = with_timeout(self.embedder.embed, TIMEOUTS.embedding, f"Embedding inbox {inbox.id}", text)
            created = self.db.create_inbox_embedding(InboxEmbedding(
                inbox_id=inbox.id,
                team_id=inbox.team_id,
                embedding=result.vector,
                source_text=text,
                model=result.model,
            ))
            if not created:
                logger.info(f"Embedding for inbox {inbox.id} was stored by a concurrent job")
        except Exception as e:
            logger.error(f"Embedding failed for inbox {inbox.id}: {e}")
            self._finish(inbox.id)
            raise

        self._finish(inbox.id)
        logger.info(f"Embedded inbox {inbox.id} with {result.model} ({len(result.vector)} dims)")
        return {"inbox_id": inbox.id, "embedded": True, "model": result.model}

    def _finish(self, inbox_id: str) -> None:
        self.db.update_inbox_status(inbox_id, InboxStatus.PENDING, expected=(InboxStatus.ANALYZING,))
