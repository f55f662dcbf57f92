"""batch-extract-inbox: extract a backlog of new inbox items in one job.

A mailbox sync that brings in more attachments than the one-job-per-file
path should take hands them here. Items are claimed and extracted a chunk
at a time; extracted items are embedded together and sent to matching as
one batch. An item that fails falls back to its own process-attachment job.
"""

import logging
import time
import uuid
from typing import Optional

from ..errors import JobTimeoutError
from ..jobs.base import JobContext, JobStatus
from ..jobs.batching import chunked, settle_all
from ..models import InboxItem, InboxStatus
from ..schemas import BatchExtractInboxPayload, BatchProcessMatchingPayload, EmbedInboxPayload
from ..timeouts import TIMEOUTS
from .attachments import AttachmentProcessor
from .uploads import inbox_job_payload

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10
MAX_ITEMS_PER_JOB = 500


class BatchExtractInboxProcessor(AttachmentProcessor):
    """Extracts many ``new`` items, reusing the process-attachment stages."""

    name = "batch-extract-inbox"
    payload_schema = BatchExtractInboxPayload
    waits_on = ("embed-inbox",)

    def process(self, payload: BatchExtractInboxPayload, ctx: JobContext) -> dict:
        total = len(payload.inbox_ids)
        if total > MAX_ITEMS_PER_JOB:
            return self._split(payload, ctx)

        # A retry takes back what its earlier attempt claimed but never finished
        claimable = InboxStatus.CLAIMABLE
        if ctx.job.attempts_made > 1:
            claimable = (InboxStatus.NEW, InboxStatus.PROCESSING)
        extracted: list[InboxItem] = []
        failed: list[InboxItem] = []
        other = skipped = 0
        for index, chunk in enumerate(chunked(payload.inbox_ids, CHUNK_SIZE)):
            claimed = [item for item in (self._claim_new(payload.team_id, i, claimable) for i in chunk) if item]
            skipped += len(chunk) - len(claimed)
            for entry in settle_all(claimed, self._extract_item):
                if not entry.ok:
                    logger.warning(f"Batch extraction of inbox {entry.item.id} failed: {entry.error}")
                    failed.append(entry.item)
                elif entry.value:
                    extracted.append(entry.item)
                else:
                    other += 1
            ctx.update_progress({
                "status": "extracting",
                "processed": min((index + 1) * CHUNK_SIZE, total),
                "total": total,
            })

        embedded = self._embed(ctx, extracted)
        if embedded:
            ctx.queue.trigger(
                "batch-process-matching",
                BatchProcessMatchingPayload(team_id=payload.team_id, inbox_ids=embedded),
            )
        for item in extracted:
            self._request_classification(ctx, item)
        for item in failed:
            self._fall_back(ctx, item)

        ctx.update_progress({"status": "complete", "processed": total, "total": total})
        logger.info(
            f"Batch extraction for team {payload.team_id}: {len(extracted)} extracted, "
            f"{other} other, {len(failed)} failed, {skipped} skipped of {total}"
        )
        return {
            "total_items": total,
            "extracted": len(extracted),
            "other": other,
            "failed": len(failed),
            "skipped": skipped,
            "embedded": len(embedded),
        }

    def on_failed(self, payload: BatchExtractInboxPayload, error: BaseException) -> None:
        # Unfinished items go back to new so the account's next sync re-drives them
        for inbox_id in payload.inbox_ids:
            try:
                self.db.update_inbox_status(inbox_id, InboxStatus.NEW, expected=(InboxStatus.PROCESSING,))
            except Exception as e:
                logger.error(f"Could not reset inbox {inbox_id} to new: {e}", exc_info=True)

    def _split(self, payload: BatchExtractInboxPayload, ctx: JobContext) -> dict:
        jobs = [
            ctx.queue.trigger("batch-extract-inbox", payload.model_copy(update={"inbox_ids": list(ids)}))
            for ids in chunked(payload.inbox_ids, MAX_ITEMS_PER_JOB)
        ]
        logger.info(f"Split {len(payload.inbox_ids)} items into {len(jobs)} batch extraction jobs")
        return {"total_items": len(payload.inbox_ids), "split_into_jobs": len(jobs)}

    def _claim_new(self, team_id: str, inbox_id: str, claimable) -> Optional[InboxItem]:
        item = self.db.get_inbox_by_id(inbox_id, team_id)
        if item is None:
            logger.warning(f"Inbox {inbox_id} not found for team {team_id}, skipping")
            return None
        if not self.db.update_inbox_status(item.id, InboxStatus.PROCESSING, expected=claimable):
            logger.info(f"Inbox {item.id} is {item.status}, already taken")
            return None
        return item

    def _extract_item(self, item: InboxItem) -> bool:
        content_type = self._normalize(item, item.content_type or "application/pdf")
        extraction = self._extract(item, content_type)
        filename = item.file_name or item.file_path[-1]
        return self._persist(item, extraction, item.display_name, filename)

    def _embed(self, ctx: JobContext, items: list[InboxItem]) -> list[str]:
        """Embed all items and wait for them together; returns the embedded ids."""
        jobs = {}
        for item in items:
            try:
                jobs[item.id] = ctx.queue.trigger(
                    "embed-inbox",
                    EmbedInboxPayload(inbox_id=item.id, team_id=item.team_id),
                    job_id=f"embed-inbox-{uuid.uuid4().hex}",
                )
            except Exception as e:
                logger.warning(f"Could not enqueue embedding for inbox {item.id}: {e}")
                self._release(item.id)

        deadline = time.monotonic() + TIMEOUTS.embedding_wait
        embedded = []
        for inbox_id, job in jobs.items():
            try:
                finished = ctx.queue.backend.wait_for(job.id, max(deadline - time.monotonic(), 0.01))
            except JobTimeoutError:
                # Matched later through the bidirectional pass once its embedding lands
                logger.warning(f"Embedding of inbox {inbox_id} still running after the batch wait")
                continue
            if finished.status == JobStatus.COMPLETED:
                embedded.append(inbox_id)
            else:
                logger.warning(f"Embedding of inbox {inbox_id} failed: {finished.error}")
        return embedded

    def _fall_back(self, ctx: JobContext, item: InboxItem) -> None:
        if not self.db.update_inbox_status(item.id, InboxStatus.NEW, expected=InboxStatus.TRANSIENT):
            return
        try:
            ctx.queue.trigger("process-attachment", inbox_job_payload(item))
        except Exception as e:
            logger.error(f"Could not hand inbox {item.id} to process-attachment, left for the next sync: {e}")
