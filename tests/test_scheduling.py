import datetime as dt

import pytest

from reconciler.errors import NotFoundError
from reconciler.jobs import JobStatus
from reconciler.models import InboxStatus
from reconciler.scheduling import (
    InitialSetupProcessor,
    NoMatchSchedulerProcessor,
    SyncAccountsSchedulerProcessor,
    account_cron_pattern,
    schedule_key,
    spread_delays,
)
from reconciler.scheduling.dispatch import window_start
from reconciler.schemas import InitialSetupPayload, NoMatchSchedulerPayload, SyncAccountsSchedulerPayload

from conftest import NOW, make_context


# ============================================================================
# No-match sweep
# ============================================================================

def days_ago(days: int) -> dt.datetime:
    return NOW - dt.timedelta(days=days)


def test_sweep_moves_only_items_older_than_cutoff(db, queue):
    recent = db.add_inbox(status=InboxStatus.PENDING, created_at=days_ago(89))
    boundary = db.add_inbox(status=InboxStatus.PENDING, created_at=days_ago(90))
    stale = db.add_inbox(status=InboxStatus.PENDING, created_at=days_ago(91))
    sweep = NoMatchSchedulerProcessor(db, enabled=True, clock=lambda: NOW)

    result = sweep.process(NoMatchSchedulerPayload(), make_context(queue))

    assert result["total_updated"] == 1
    assert result["per_team"] == {"team-1": 1}
    assert result["cutoff"].startswith("2025-03-17T12:00:00")
    assert db.inbox[stale.id].status == InboxStatus.NO_MATCH
    assert db.inbox[boundary.id].status == InboxStatus.PENDING
    assert db.inbox[recent.id].status == InboxStatus.PENDING


def test_sweep_ignores_matched_and_settled_items(db, queue):
    matched = db.add_inbox(status=InboxStatus.PENDING, matched_transaction_id="tx-1", created_at=days_ago(120))
    other = db.add_inbox(status=InboxStatus.OTHER, created_at=days_ago(120))
    processing = db.add_inbox(status=InboxStatus.PROCESSING, created_at=days_ago(120))
    sweep = NoMatchSchedulerProcessor(db, enabled=True, clock=lambda: NOW)

    result = sweep.process(NoMatchSchedulerPayload(), make_context(queue))

    assert result["total_updated"] == 0
    assert db.inbox[matched.id].status == InboxStatus.PENDING
    assert db.inbox[other.id].status == InboxStatus.OTHER
    assert db.inbox[processing.id].status == InboxStatus.PROCESSING


def test_sweep_is_skipped_when_disabled(db, queue):
    stale = db.add_inbox(status=InboxStatus.PENDING, created_at=days_ago(200))
    sweep = NoMatchSchedulerProcessor(db, enabled=False, clock=lambda: NOW)

    result = sweep.process(NoMatchSchedulerPayload(), make_context(queue))

    assert result["skipped"] is True
    assert db.inbox[stale.id].status == InboxStatus.PENDING


# ============================================================================
# Sync dispatch
# ============================================================================

def test_account_cron_pattern_is_stable_and_spread():
    pattern = account_cron_pattern("acct-1")
    minute, hours, *rest = pattern.split()

    assert account_cron_pattern("acct-1") == pattern
    assert 0 <= int(minute) <= 59
    assert len(hours.split(",")) == 4
    assert rest == ["*", "*", "*"]


def test_account_cron_pattern_rejects_bad_interval():
    with pytest.raises(ValueError):
        account_cron_pattern("acct-1", interval_hours=0)


def test_spread_delays_cover_the_window_evenly():
    assert spread_delays(4, 60_000) == [0, 15_000, 30_000, 45_000]
    assert spread_delays(0, 60_000) == []


def test_window_start_rounds_down():
    at = dt.datetime(2025, 6, 15, 12, 37, 12, tzinfo=dt.timezone.utc)
    assert window_start(at, 60) == dt.datetime(2025, 6, 15, 12, 0, tzinfo=dt.timezone.utc)
    assert window_start(at, 15) == dt.datetime(2025, 6, 15, 12, 30, tzinfo=dt.timezone.utc)


def test_dispatcher_enqueues_one_sync_per_connected_account(db, queue, backend):
    for account_id in ("acct-a", "acct-b", "acct-c"):
        db.add_account(id=account_id)
    db.add_account(id="acct-d", status="disconnected")
    dispatcher = SyncAccountsSchedulerProcessor(db, clock=lambda: NOW + dt.timedelta(minutes=20))

    first = dispatcher.process(SyncAccountsSchedulerPayload(), make_context(queue))
    again = dispatcher.process(SyncAccountsSchedulerPayload(), make_context(queue))

    assert first["job_ids"] == [
        "sync-acct-a-202506151200", "sync-acct-b-202506151200", "sync-acct-c-202506151200",
    ]
    assert again["job_ids"] == first["job_ids"]
    jobs = backend.jobs(name="sync-scheduler")
    assert len(jobs) == 3
    assert jobs[0].status == JobStatus.WAITING
    assert [job.status for job in jobs[1:]] == [JobStatus.DELAYED, JobStatus.DELAYED]
    assert jobs[0].payload == {"id": "acct-a", "manualSync": False}


def test_dispatcher_without_accounts(db, queue):
    result = SyncAccountsSchedulerProcessor(db, clock=lambda: NOW).process(
        SyncAccountsSchedulerPayload(), make_context(queue),
    )
    assert result == {"accounts": 0, "job_ids": []}


def test_initial_setup_registers_schedule_and_syncs_once(db, queue, backend):
    account = db.add_account(id="acct-1")

    result = InitialSetupProcessor(db).process(InitialSetupPayload(inbox_account_id=account.id), make_context(queue))

    key = schedule_key(account.id)
    assert result["schedule_id"] == key
    assert backend.get_repeatable(key).cron == account_cron_pattern(account.id)
    assert backend.get_repeatable(key).payload == {"id": "acct-1", "manualSync": False}
    assert db.accounts[account.id].schedule_id == key
    assert backend.get(result["initial_sync_job_id"]).payload == {"id": "acct-1", "manualSync": True}


def test_initial_setup_for_unknown_account(db, queue):
    with pytest.raises(NotFoundError):
        InitialSetupProcessor(db).process(InitialSetupPayload(inbox_account_id="missing"), make_context(queue))
