"""sync-scheduler: pull new attachments from a connected mailbox.

Provider attachments are filtered (already ingested, too large, blocked
sender), uploaded in small concurrent batches and recorded as ``new`` inbox
items. Every ``new`` item of the account is then handed to extraction: one
``process-attachment`` job each, or ``batch-extract-inbox`` for a backlog.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ..errors import InboxAuthError, InboxSyncError, NotFoundError
from ..ingestion.base import InboxProvider, ensure_extension
from ..ingestion.gmail import GmailProvider
from ..jobs.base import JobContext, Processor, utcnow
from ..jobs.batching import chunked, settle_all
from ..matching.notifications import NotificationDispatcher, notify_new_inbox_items
from ..models import BlocklistEntry, InboxAccount, InboxStatus, RawAttachment, SyncResult
from ..processing.email_parser import sender_domain
from ..processing.uploads import inbox_job_payload, store_attachment
from ..schemas import BatchExtractInboxPayload, SyncSchedulerPayload
from ..storage.attachments import S3Client
from ..storage.database import DatabaseClient

logger = logging.getLogger(__name__)

UPLOAD_BATCH_SIZE = 5

# Above this many new items a sync hands extraction to batch-extract-inbox
BATCH_THRESHOLD = 20
MAX_ITEMS_PER_BATCH_JOB = 500
MAX_QUEUED_EXTRACTIONS = 2000

# Messages inspected per run
INCREMENTAL_MAX_RESULTS = 50
FULL_SYNC_MAX_RESULTS = 200

ProviderFactory = Callable[[InboxAccount], InboxProvider]


class AccountStatus:
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def separate_blocklist(entries: list[BlocklistEntry]) -> tuple[set[str], set[str]]:
    """Split blocklist entries into lower-cased (domains, emails)."""
    domains = {e.value.lower() for e in entries if e.type == "domain"}
    emails = {e.value.lower() for e in entries if e.type == "email"}
    return domains, emails


def _domain_of(website: Optional[str]) -> Optional[str]:
    if not website:
        return None
    domain = website.lower().removeprefix("https://").removeprefix("http://")
    return domain.removeprefix("www.").split("/")[0] or None


def gmail_provider_factory(
    db: DatabaseClient,
    client_id: Optional[str],
    client_secret: Optional[str],
) -> ProviderFactory:
    """Build providers for stored accounts, persisting refreshed tokens."""

    def factory(account: InboxAccount) -> InboxProvider:
        if account.provider != GmailProvider.provider:
            raise InboxSyncError(
                f"Unsupported inbox provider {account.provider}",
                code="unsupported_provider",
                provider=account.provider,
                retryable=False,
            )

        def save_token(access_token: str, expiry: datetime) -> None:
            db.update_inbox_account(account.id, access_token=access_token, expiry_date=expiry)

        return GmailProvider(account, client_id, client_secret, token_updater=save_token)

    return factory


class SyncSchedulerProcessor(Processor):
    """Syncs one inbox account.

    Args:
        db: Database client
        s3: Object storage for uploaded attachments
        provider_factory: Builds a provider for an account
        dispatcher: Receives the inbox_new notification
        max_attachment_size: Attachments above this many bytes are skipped
    """

    name = "sync-scheduler"
    payload_schema = SyncSchedulerPayload

    def __init__(
        self,
        db: DatabaseClient,
        s3: S3Client,
        provider_factory: ProviderFactory,
        dispatcher: NotificationDispatcher,
        max_attachment_size: int = 10 * 1024 * 1024,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.s3 = s3
        self.provider_factory = provider_factory
        self.dispatcher = dispatcher
        self.max_attachment_size = max_attachment_size
        self._clock = clock

    def process(self, payload: SyncSchedulerPayload, ctx: JobContext) -> dict:
        account = self.db.get_inbox_account(payload.id)
        if account is None:
            raise NotFoundError(f"Inbox account {payload.id} not found")

        logger.info(
            f"Starting {account.provider} sync for account {account.id} "
            f"(team {account.team_id}, last accessed {account.last_accessed}, manual={payload.manual_sync})"
        )
        try:
            result = self._sync(account, payload.manual_sync, ctx)
        except InboxAuthError as e:
            if e.requires_reauth:
                self.db.update_inbox_account(
                    account.id,
                    status=AccountStatus.DISCONNECTED,
                    error_message=f"Authentication failed ({e.code}): {e}",
                )
                logger.error(f"Account {account.id} disconnected, re-authentication required ({e.code})")
            else:
                logger.warning(f"Transient auth error for account {account.id} ({e.code}), will retry")
            raise
        except InboxSyncError as e:
            logger.warning(f"Sync failed for account {account.id} ({e.code}): {e}")
            raise
        except Exception as e:
            logger.error(f"Sync failed for account {account.id}: {e}", exc_info=True)
            raise

        return result.model_dump()

    def _sync(self, account: InboxAccount, manual_sync: bool, ctx: JobContext) -> SyncResult:
        result = SyncResult(account_id=account.id)

        provider = self.provider_factory(account)
        try:
            since = None if manual_sync else account.last_accessed
            max_results = FULL_SYNC_MAX_RESULTS if manual_sync else INCREMENTAL_MAX_RESULTS
            attachments = provider.get_attachments(since, max_results)
        finally:
            provider.close()

        result.attachments_found = len(attachments)
        ctx.update_progress({"status": "discovering", "discovered_count": len(attachments)})
        logger.info(f"Found {len(attachments)} attachments for account {account.id}")

        accepted = self._filter(account, attachments, result)
        logger.info(
            f"Attachment filtering for account {account.id}: {len(accepted)} of {len(attachments)} kept "
            f"(already processed {result.already_processed}, too large {result.too_large}, "
            f"blocked domain {result.blocked_domain}, blocked email {result.blocked_email})"
        )

        uploaded = []
        for batch in chunked(accepted, UPLOAD_BATCH_SIZE):
            for entry in settle_all(batch, lambda a: self._upload(account, a)):
                if entry.ok and entry.value is not None:
                    uploaded.append(entry.value)
                elif not entry.ok:
                    result.upload_errors += 1
                    logger.warning(f"Upload failed for {entry.item.filename} on account {account.id}: {entry.error}")
        result.uploaded = len(uploaded)

        ctx.update_progress({
            "status": "extracting",
            "discovered_count": len(attachments),
            "uploaded_count": len(uploaded),
        })

        result.jobs_triggered = self._enqueue_extraction(account, ctx)

        if uploaded:
            notify_new_inbox_items(self.dispatcher, account.team_id, len(uploaded), account.provider, account.id)

        self.db.update_inbox_account(
            account.id,
            status=AccountStatus.CONNECTED,
            last_accessed=self._clock(),
            error_message=None,
        )
        ctx.update_progress({
            "status": "complete",
            "discovered_count": len(attachments),
            "uploaded_count": len(uploaded),
        })
        logger.info(f"Sync for account {account.id} complete: {result.uploaded} new attachments")
        return result

    def _filter(
        self,
        account: InboxAccount,
        attachments: list[RawAttachment],
        result: SyncResult,
    ) -> list[RawAttachment]:
        existing = self.db.get_existing_reference_ids(account.team_id, [a.reference_id for a in attachments])
        blocked_domains, blocked_emails = separate_blocklist(self.db.get_inbox_blocklist(account.team_id))

        accepted = []
        for attachment in attachments:
            if attachment.reference_id in existing:
                result.already_processed += 1
                continue
            if attachment.size > self.max_attachment_size:
                result.too_large += 1
                logger.warning(
                    f"Attachment {attachment.filename} is {attachment.size} bytes, "
                    f"limit is {self.max_attachment_size}"
                )
                continue

            domains = {_domain_of(attachment.website)}
            if attachment.sender_email:
                domains.add(sender_domain(attachment.sender_email))
            if domains & blocked_domains:
                result.blocked_domain += 1
                continue
            if attachment.sender_email and attachment.sender_email.lower() in blocked_emails:
                result.blocked_email += 1
                continue
            accepted.append(attachment)
        return accepted


    def _enqueue_extraction(self, account: InboxAccount, ctx: JobContext) -> int:
        """Hand every ``new`` item of the account to extraction.

        Rows left ``new`` by an earlier run that stopped before enqueueing
        are picked up too. Single jobs are keyed by inbox id so an item that
        already has one is not queued twice; above BATCH_THRESHOLD items go
        to batch-extract-inbox instead.

        Returns:
            int: Number of jobs triggered
        """
        items = self.db.get_new_inbox_items(account.team_id, account.id, limit=MAX_QUEUED_EXTRACTIONS)
        if len(items) > BATCH_THRESHOLD:
            batches = list(chunked(items, MAX_ITEMS_PER_BATCH_JOB))
            for batch in batches:
                ctx.queue.trigger("batch-extract-inbox", BatchExtractInboxPayload(
                    team_id=account.team_id,
                    inbox_account_id=account.id,
                    inbox_ids=[item.id for item in batch],
                ))
            logger.info(f"Queued {len(items)} items of account {account.id} for batch extraction")
            return len(batches)

        for item in items:
            ctx.queue.trigger("process-attachment", inbox_job_payload(item), job_id=f"process-attachment-{item.id}")
        return len(items)

    def _upload(self, account: InboxAccount, attachment: RawAttachment):
        """Store one attachment and record it as a new inbox item.

        Returns:
            Optional[tuple[RawAttachment, list[str]]]: The attachment and its
            storage path, or None when a concurrent sync already recorded it
        """
        attachment = attachment.model_copy(update={
            "filename": ensure_extension(attachment.filename, attachment.mimetype),
        })
        file_path = store_attachment(self.s3, attachment)
        _, created = self.db.create_inbox(
            team_id=account.team_id,
            reference_id=attachment.reference_id,
            file_path=file_path,
            file_name=file_path[-1],
            content_type=attachment.mimetype,
            size=attachment.size,
            status=InboxStatus.NEW,
            display_name=attachment.filename,
            website=attachment.website,
            sender_email=attachment.sender_email,
            inbox_account_id=account.id,
            source_metadata=attachment.source_metadata,
        )
        if not created:
            # The concurrent sync stored its own copy; ours would never be referenced
            self._discard(file_path)
            logger.info(f"Attachment {attachment.reference_id} was recorded concurrently, skipping")
            return None
        return attachment, file_path

    def _discard(self, file_path: list[str]) -> None:
        key = "/".join(file_path)
        try:
            self.s3.delete_attachment(key)
        except Exception as e:
            logger.warning(f"Could not delete unreferenced upload {key}: {e}")
