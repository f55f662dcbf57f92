"""channel-upload: download a chat/e-invoice attachment and hand it to process-attachment."""

import logging
from typing import Mapping

from ..errors import ValidationFailure
from ..ingestion.base import AttachmentAdapter, unique_filename
from ..jobs.base import JobContext, Processor
from ..models import InboxItem, RawAttachment
from ..schemas import ChannelUploadPayload, ProcessAttachmentPayload
from ..storage.attachments import S3Client, inbox_key
from ..storage.database import DatabaseClient

logger = logging.getLogger(__name__)


def store_attachment(s3: S3Client, attachment: RawAttachment) -> list[str]:
    """Upload attachment bytes to the team's inbox folder.

    Returns:
        list[str]: Path segments of the stored object
    """
    file_path = inbox_key(attachment.team_id, unique_filename(attachment.filename))
    s3.upload_attachment("/".join(file_path), attachment.data, content_type=attachment.mimetype)
    return file_path


def attachment_job_payload(
    attachment: RawAttachment,
    file_path: list[str],
    inbox_account_id: str | None = None,
) -> ProcessAttachmentPayload:
    return ProcessAttachmentPayload(
        team_id=attachment.team_id,
        mimetype=attachment.mimetype,
        size=attachment.size,
        file_path=file_path,
        reference_id=attachment.reference_id,
        website=attachment.website,
        sender_email=attachment.sender_email,
        inbox_account_id=inbox_account_id,
        display_name=attachment.filename,
        source_metadata=attachment.source_metadata,
    )


def inbox_job_payload(item: InboxItem) -> ProcessAttachmentPayload:
    """Extraction job for an inbox row already recorded by a mailbox sync."""
    return ProcessAttachmentPayload(
        team_id=item.team_id,
        mimetype=item.content_type or "application/pdf",
        size=item.size or 0,
        file_path=item.file_path,
        reference_id=item.reference_id,
        website=item.website,
        sender_email=item.sender_email,
        inbox_account_id=item.inbox_account_id,
        display_name=item.display_name,
        source_metadata=item.source_metadata,
    )


class ChannelUploadProcessor(Processor):
    """Downloads through the channel's adapter, stores, then enqueues processing."""

    name = "channel-upload"
    payload_schema = ChannelUploadPayload

    def __init__(
        self,
        db: DatabaseClient,
        s3: S3Client,
        adapters: Mapping[str, AttachmentAdapter],
        max_size: int,
    ):
        self.db = db
        self.s3 = s3
        self.adapters = dict(adapters)
        self.max_size = max_size

    def process(self, payload: ChannelUploadPayload, ctx: JobContext) -> dict:
        adapter = self.adapters.get(payload.channel)
        if adapter is None:
            raise ValidationFailure(f"No adapter configured for channel {payload.channel}")

        metadata = dict(payload.source_metadata)
        if payload.caption:
            metadata["caption"] = payload.caption

        attachment = adapter.download(payload.team_id, {
            "file_id": payload.file_id,
            "filename": payload.filename,
            "mimetype": payload.mimetype,
            "source_metadata": metadata,
        })
        if self.db.get_existing_reference_ids(payload.team_id, [attachment.reference_id]):
            logger.info(f"{payload.channel} upload {attachment.reference_id} already ingested, skipping")
            return {"reference_id": attachment.reference_id, "duplicate": True}
        if attachment.size == 0:
            raise ValidationFailure(f"{payload.channel} file {payload.file_id} is empty")
        if attachment.size > self.max_size:
            raise ValidationFailure(
                f"{payload.channel} file {payload.file_id} is {attachment.size} bytes, "
                f"limit is {self.max_size}"
            )

        file_path = store_attachment(self.s3, attachment)
        job = ctx.queue.trigger("process-attachment", attachment_job_payload(attachment, file_path))
        logger.info(
            f"Stored {payload.channel} upload {attachment.reference_id} at {'/'.join(file_path)}, "
            f"enqueued {job.id}"
        )
        return {"reference_id": attachment.reference_id, "file_path": file_path, "job_id": job.id}
