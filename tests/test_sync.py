import datetime as dt

import pytest

from reconciler.errors import InboxAuthError, InboxSyncError
from reconciler.jobs import JobRunner, JobStatus, ProcessorRegistry, QueueWorker
from reconciler.matching import NotificationType
from reconciler.models import BlocklistEntry, InboxStatus, RawAttachment
from reconciler.scheduling import SyncSchedulerProcessor
from reconciler.scheduling.sync import separate_blocklist
from reconciler.schemas import SyncSchedulerPayload

from conftest import NOW, TEAM, make_context

LAST_SYNC = NOW - dt.timedelta(hours=6)


class FakeProvider:
    provider = "gmail"

    def __init__(self, attachments=(), error=None):
        self.attachments = list(attachments)
        self.error = error
        self.requests = []
        self.closed = False

    def get_attachments(self, since, max_results):
        self.requests.append((since, max_results))
        if self.error is not None:
            raise self.error
        return self.attachments

    def close(self):
        self.closed = True


def mail_attachment(reference_id: str, sender: str, size: int = 100, website=None, filename="invoice.pdf"):
    return RawAttachment(
        team_id=TEAM,
        data=b"x" * size,
        mimetype="application/pdf",
        filename=filename,
        reference_id=reference_id,
        website=website,
        sender_email=sender,
    )


@pytest.fixture
def account(db):
    return db.add_account(id="acct-1", last_accessed=LAST_SYNC)


def build(db, s3, dispatcher, provider):
    return SyncSchedulerProcessor(
        db, s3, lambda account: provider, dispatcher, max_attachment_size=1024, clock=lambda: NOW,
    )


def test_sync_filters_uploads_and_enqueues(db, s3, dispatcher, queue, account):
    db.add_inbox(reference_id="msg-0_old.pdf", status=InboxStatus.PENDING)
    db.blocklist = [
        BlocklistEntry(team_id=TEAM, type="domain", value="Spam.example"),
        BlocklistEntry(team_id=TEAM, type="email", value="promo@shop.example"),
    ]
    provider = FakeProvider([
        mail_attachment("msg-0_old.pdf", "billing@hosting.example"),
        mail_attachment("msg-1_huge.pdf", "billing@hosting.example", size=2048),
        mail_attachment("msg-2_a.pdf", "news@other.example", website="spam.example"),
        mail_attachment("msg-3_b.pdf", "x@spam.example"),
        mail_attachment("msg-4_c.pdf", "promo@shop.example"),
        mail_attachment("msg-5_invoice.pdf", "billing@hosting.example", website="hosting.example"),
    ])
    ctx = make_context(queue, "sync-scheduler")

    result = build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), ctx)

    assert result == {
        "account_id": "acct-1",
        "attachments_found": 6,
        "already_processed": 1,
        "too_large": 1,
        "blocked_domain": 2,
        "blocked_email": 1,
        "uploaded": 1,
        "upload_errors": 0,
        "jobs_triggered": 1,
    }

    created = db.get_inbox_by_reference_id(TEAM, "msg-5_invoice.pdf")
    assert created.status == InboxStatus.NEW
    assert created.inbox_account_id == account.id
    assert s3.objects[created.file_key] == b"x" * 100

    (job,) = queue.backend.jobs(name="process-attachment")
    assert job.payload["referenceId"] == "msg-5_invoice.pdf"
    assert job.payload["filePath"] == created.file_path
    assert job.payload["inboxAccountId"] == account.id
    assert job.payload["senderEmail"] == "billing@hosting.example"

    assert db.accounts[account.id].status == "connected"
    assert db.accounts[account.id].last_accessed == NOW
    assert [n.type for n in dispatcher.sent] == [NotificationType.INBOX_NEW]
    assert dispatcher.sent[0].payload["count"] == 1
    assert ctx.job.progress["status"] == "complete"
    assert provider.closed


def test_incremental_sync_starts_from_last_access(db, s3, dispatcher, queue, account):
    provider = FakeProvider()
    build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), make_context(queue))
    assert provider.requests == [(LAST_SYNC, 50)]
    assert dispatcher.sent == []


def test_manual_sync_is_a_full_sync(db, s3, dispatcher, queue, account):
    provider = FakeProvider()
    build(db, s3, dispatcher, provider).process(
        SyncSchedulerPayload(id=account.id, manual_sync=True), make_context(queue),
    )
    assert provider.requests == [(None, 200)]


def test_failed_upload_is_counted(db, s3, dispatcher, queue, account):
    s3.fail_keys = {"invoice"}
    provider = FakeProvider([mail_attachment("msg-1_invoice.pdf", "billing@hosting.example")])

    result = build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert result["upload_errors"] == 1
    assert result["uploaded"] == 0
    assert queue.backend.jobs(name="process-attachment") == []
    assert db.inbox == {}


def test_revoked_credentials_disconnect_the_account(db, s3, dispatcher, queue, account):
    error = InboxAuthError("Token refresh rejected: invalid_grant", code="invalid_grant", provider="gmail")
    provider = FakeProvider(error=error)

    with pytest.raises(InboxAuthError):
        build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert db.accounts[account.id].status == "disconnected"
    assert "invalid_grant" in db.accounts[account.id].error_message
    assert provider.closed


def test_transient_auth_error_keeps_the_account(db, s3, dispatcher, queue, account):
    error = InboxAuthError("timeout", code="token_refresh_failed", provider="gmail", requires_reauth=False)
    provider = FakeProvider(error=error)

    with pytest.raises(InboxAuthError):
        build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert db.account_updates == []
    assert db.accounts[account.id].status == "connected"
    assert provider.closed


def test_revoked_credentials_fail_the_job_without_retry(db, s3, dispatcher, queue, account):
    error = InboxAuthError("Token refresh rejected: invalid_grant", code="invalid_grant", provider="gmail")
    processor = build(db, s3, dispatcher, FakeProvider(error=error))
    worker = QueueWorker(JobRunner(ProcessorRegistry([processor]), queue))

    job = queue.trigger("sync-scheduler", {"id": account.id})
    worker.run_until_idle()

    failed = queue.backend.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.attempts_made == 1
    assert failed.error_category == "unauthorized"


def test_dropped_connection_keeps_the_account_and_retries(db, s3, dispatcher, queue, account):
    error = InboxSyncError("IMAP connection lost: socket error: EOF", code="imap_connection_lost", provider="gmail")
    processor = build(db, s3, dispatcher, FakeProvider(error=error))
    worker = QueueWorker(JobRunner(ProcessorRegistry([processor]), queue))

    job = queue.trigger("sync-scheduler", {"id": account.id})
    worker.run_until_idle()

    assert queue.backend.get(job.id).status == JobStatus.DELAYED
    assert db.account_updates == []
    assert db.accounts[account.id].status == "connected"


def new_item(db, account, **fields):
    return db.add_inbox(status=InboxStatus.NEW, inbox_account_id=account.id,
                        content_type="application/pdf", size=100, display_name="invoice.pdf", **fields)


def test_sync_enqueues_items_an_earlier_run_left_new(db, s3, dispatcher, queue, account):
    stranded = new_item(db, account, sender_email="billing@hosting.example")
    db.add_inbox(status=InboxStatus.NEW, inbox_account_id="acct-other", size=100)
    processor = build(db, s3, dispatcher, FakeProvider())

    first = processor.process(SyncSchedulerPayload(id=account.id), make_context(queue))
    second = processor.process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert first["jobs_triggered"] == 1
    assert second["jobs_triggered"] == 1
    (job,) = queue.backend.jobs(name="process-attachment")
    assert job.id == f"process-attachment-{stranded.id}"
    assert job.payload["filePath"] == stranded.file_path
    assert job.payload["senderEmail"] == "billing@hosting.example"
    assert job.payload["inboxAccountId"] == account.id


def test_large_backlog_goes_to_batch_extraction(db, s3, dispatcher, queue, account):
    items = [new_item(db, account) for _ in range(25)]

    result = build(db, s3, dispatcher, FakeProvider()).process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert result["jobs_triggered"] == 1
    assert queue.backend.jobs(name="process-attachment") == []
    (job,) = queue.backend.jobs(name="batch-extract-inbox")
    assert job.queue_name == "inbox-provider"
    assert job.payload["inboxIds"] == [item.id for item in items]
    assert job.payload["inboxAccountId"] == account.id


def test_attachment_recorded_concurrently_leaves_no_stored_copy(db, s3, dispatcher, queue, account, monkeypatch):
    db.add_inbox(reference_id="msg-1_invoice.pdf", status=InboxStatus.PENDING)
    # The other sync records the row after this one has filtered
    monkeypatch.setattr(db, "get_existing_reference_ids", lambda team_id, reference_ids: set())
    provider = FakeProvider([mail_attachment("msg-1_invoice.pdf", "billing@hosting.example")])

    result = build(db, s3, dispatcher, provider).process(SyncSchedulerPayload(id=account.id), make_context(queue))

    assert result["uploaded"] == 0
    assert result["upload_errors"] == 0
    assert s3.objects == {}
    assert queue.backend.jobs(name="process-attachment") == []


def test_separate_blocklist_lowercases_values():
    domains, emails = separate_blocklist([
        BlocklistEntry(team_id=TEAM, type="domain", value="Example.COM"),
        BlocklistEntry(team_id=TEAM, type="email", value="Ops@Example.com"),
    ])
    assert domains == {"example.com"}
    assert emails == {"ops@example.com"}
