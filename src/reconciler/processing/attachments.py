"""process-attachment: turn a stored file into an extracted, embedded inbox item.

Stages, in order:

1. Claim the inbox row (deduplicated by file path, then by reference id).
2. Normalise legacy image formats to JPEG.
3. Extract fields through the document extraction gateway.
4. Persist the fields, group related items, embed (awaited), enqueue matching.

Any failure after the row is claimed returns it to ``pending`` so it can be
re-driven. Timeouts propagate untouched so the queue retries; the final
``on_failed`` hook releases the row once retries are exhausted.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from PIL import UnidentifiedImageError

from ..config import Config
from ..errors import JobTimeoutError, ValidationFailure
from ..jobs.base import JobContext, Processor
from ..metrics import StageTimer
from ..models import DocumentType, ExtractionResult, InboxItem, InboxStatus
from ..schemas import (
    BatchProcessMatchingPayload,
    ClassifyDocumentPayload,
    EmbedInboxPayload,
    ProcessAttachmentPayload,
)
from ..semantic.inference import DocumentExtractionClient
from ..storage.attachments import S3Client
from ..storage.database import DatabaseClient
from ..timeouts import TIMEOUTS, with_timeout
from .images import convert_to_jpeg, needs_conversion

logger = logging.getLogger(__name__)


class AttachmentProcessor(Processor):
    """Extracts a stored attachment and drives it into matching."""

    name = "process-attachment"
    payload_schema = ProcessAttachmentPayload
    waits_on = ("embed-inbox",)

    def __init__(
        self,
        db: DatabaseClient,
        s3: S3Client,
        extractor: DocumentExtractionClient,
        config: Config,
    ):
        self.db = db
        self.s3 = s3
        self.extractor = extractor
        self.config = config

    def process(self, payload: ProcessAttachmentPayload, ctx: JobContext) -> dict:
        if not payload.filename.strip():
            raise ValidationFailure("Attachment has an empty file name")
        if payload.size <= 0:
            raise ValidationFailure(f"Attachment {payload.filename} has invalid size {payload.size}")

        inbox = self._claim(payload, retry=ctx.job.attempts_made > 1)
        if inbox is None:
            return {"duplicate": True}

        timer = StageTimer()
        try:
            with timer.stage("normalize"):
                content_type = self._normalize(inbox, payload.mimetype)

            with timer.stage("extract"):
                extraction = self._extract(inbox, content_type)

            if not self._persist(inbox, extraction, payload.display_name, payload.filename):
                return {"inbox_id": inbox.id, "status": InboxStatus.OTHER}

            with timer.stage("embed"):
                ctx.queue.trigger_and_wait(
                    "embed-inbox",
                    EmbedInboxPayload(inbox_id=inbox.id, team_id=inbox.team_id),
                    timeout=TIMEOUTS.embedding_wait,
                )

            ctx.queue.trigger(
                "batch-process-matching",
                BatchProcessMatchingPayload(team_id=inbox.team_id, inbox_ids=[inbox.id]),
            )
            self._request_classification(ctx, inbox)
        except JobTimeoutError:
            raise
        except Exception:
            self._release(inbox.id)
            raise

        logger.info(f"Processed attachment {payload.filename} as inbox {inbox.id}: {timer.summary()}")
        return {"inbox_id": inbox.id, "status": InboxStatus.PENDING, "document_type": extraction.document_type}

    def on_failed(self, payload: ProcessAttachmentPayload, error: BaseException) -> None:
        inbox = self.db.get_inbox_by_file_path(payload.team_id, payload.file_path)
        if inbox is not None:
            self._release(inbox.id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _claim(self, payload: ProcessAttachmentPayload, retry: bool = False) -> Optional[InboxItem]:
        """Take ownership of the inbox row for this file, creating it if needed.

        A first attempt only takes ``new`` rows; a retried or reclaimed
        attempt also takes back the row its earlier attempt left behind,
        unless that row has been matched since.

        Returns:
            Optional[InboxItem]: The owned row, or None when this job is a duplicate
        """
        claimable = InboxStatus.RECLAIMABLE if retry else InboxStatus.CLAIMABLE
        inbox = self.db.get_inbox_by_file_path(payload.team_id, payload.file_path)

        if inbox is None:
            reference_id = payload.reference_id or "/".join(payload.file_path)
            inbox, created = self.db.create_inbox(
                team_id=payload.team_id,
                reference_id=reference_id,
                file_path=payload.file_path,
                file_name=payload.filename,
                content_type=payload.mimetype,
                size=payload.size,
                status=InboxStatus.PROCESSING,
                display_name=payload.display_name,
                website=payload.website,
                sender_email=payload.sender_email,
                inbox_account_id=payload.inbox_account_id,
                source_metadata=payload.source_metadata,
            )
            if created:
                return inbox
            if inbox.file_path != payload.file_path:
                logger.info(
                    f"Attachment {payload.filename} duplicates inbox {inbox.id} "
                    f"({inbox.status}), skipping"
                )
                return None

        if inbox.status not in claimable or inbox.matched_transaction_id is not None:
            logger.info(f"Inbox {inbox.id} is {inbox.status}, not reprocessing")
            return None
        if not self.db.update_inbox_status(inbox.id, InboxStatus.PROCESSING, expected=claimable):
            logger.info(f"Inbox {inbox.id} changed status concurrently, skipping")
            return None
        return inbox

    def _normalize(self, inbox: InboxItem, mimetype: str) -> str:
        if not needs_conversion(mimetype):
            return mimetype

        data = self.s3.download_attachment(inbox.file_key)
        try:
            converted = convert_to_jpeg(data)
        except (UnidentifiedImageError, OSError) as e:
            raise ValidationFailure(f"Could not convert {mimetype} image {inbox.file_key}: {e}") from e

        self.s3.upload_attachment(inbox.file_key, converted, content_type="image/jpeg")
        self.db.update_inbox(inbox.id, content_type="image/jpeg", size=len(converted))
        logger.info(f"Converted inbox {inbox.id} from {mimetype} to image/jpeg")
        return "image/jpeg"

    def _extract(self, inbox: InboxItem, content_type: str) -> ExtractionResult:
        # Signing is local; run it alongside the team lookup
        with ThreadPoolExecutor(max_workers=1) as pool:
            url_future = pool.submit(
                self.s3.generate_presigned_url, inbox.file_key, self.config.signed_url_expiry
            )
            company_name = self.db.get_team_name(inbox.team_id)
            document_url = url_future.result()

        return with_timeout(
            self.extractor.extract,
            TIMEOUTS.document_processing,
            f"Extracting inbox {inbox.id}",
            document_url,
            content_type,
            company_name=company_name,
        )

    def _persist(
        self,
        inbox: InboxItem,
        extraction: ExtractionResult,
        display_name: Optional[str],
        filename: str,
    ) -> bool:
        """Store the extracted fields; returns False for a non-financial document."""
        if extraction.document_type == DocumentType.OTHER:
            self.db.update_inbox(
                inbox.id,
                expected_statuses=InboxStatus.TRANSIENT,
                status=InboxStatus.OTHER,
                document_type=DocumentType.OTHER,
                display_name=extraction.title or inbox.display_name or filename,
                summary=extraction.summary,
            )
            logger.info(f"Inbox {inbox.id} is not a financial document, marked as other")
            return False

        fields = self._extracted_fields(inbox, extraction, display_name, filename)
        if fields["currency"] and fields["currency"] == self.db.get_team_base_currency(inbox.team_id):
            fields["base_amount"] = fields["amount"]
            fields["base_currency"] = fields["currency"]
        self.db.update_inbox(inbox.id, **fields)
        self._group_related(inbox)
        return True

    @staticmethod
    def _extracted_fields(
        inbox: InboxItem,
        extraction: ExtractionResult,
        display_name: Optional[str],
        filename: str,
    ) -> dict:
        return {
            "display_name": extraction.vendor_name or display_name or extraction.title or filename,
            "amount": extraction.amount,
            "currency": extraction.currency.upper() if extraction.currency else None,
            "date": extraction.date,
            "invoice_number": extraction.invoice_number,
            "tax_amount": extraction.tax_amount,
            "tax_rate": extraction.tax_rate,
            "tax_type": extraction.tax_type,
            "document_type": extraction.document_type,
            "website": extraction.website or inbox.website,
            "tags": extraction.tags,
            "summary": extraction.summary,
        }

    def _group_related(self, inbox: InboxItem) -> None:
        try:
            self.db.group_related_inbox_items(inbox.id, inbox.team_id)
        except Exception as e:
            logger.warning(f"Grouping related items for inbox {inbox.id} failed: {e}")

    def _request_classification(self, ctx: JobContext, inbox: InboxItem) -> None:
        try:
            ctx.queue.trigger(
                "classify-document",
                ClassifyDocumentPayload(inbox_id=inbox.id, team_id=inbox.team_id),
            )
        except Exception as e:
            logger.warning(f"Could not enqueue classification for inbox {inbox.id}: {e}")

    def _release(self, inbox_id: str) -> None:
        """Return an owned item to pending; never touches items already settled."""
        try:
            self.db.update_inbox_status(inbox_id, InboxStatus.PENDING, expected=InboxStatus.TRANSIENT)
        except Exception as e:
            logger.error(f"Could not reset inbox {inbox_id} to pending: {e}", exc_info=True)
