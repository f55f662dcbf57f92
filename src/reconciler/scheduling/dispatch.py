"""Per-account sync schedules and the centralized sync dispatcher.

Both forms spread provider load: each account gets a cron pattern derived
from a hash of its id, and the central dispatcher staggers one delayed job
per account across a time window.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable

from ..errors import NotFoundError
from ..jobs.base import JobContext, Processor, utcnow
from ..schemas import InitialSetupPayload, SyncAccountsSchedulerPayload, SyncSchedulerPayload
from ..storage.database import DatabaseClient

logger = logging.getLogger(__name__)


def schedule_key(account_id: str) -> str:
    return f"inbox-sync-{account_id}"


def account_cron_pattern(account_id: str, interval_hours: int = 6) -> str:
    """Cron pattern running every ``interval_hours`` at an account-specific offset.

    The minute and the hour offset come from a SHA-256 of the account id, so
    the same account always gets the same pattern and accounts do not all
    fire at the top of the hour.

    Args:
        account_id: Inbox account ID
        interval_hours: Hours between runs (1-24)

    Returns:
        str: Five-field cron expression, e.g. "17 3,9,15,21 * * *"
    """
    if not 1 <= interval_hours <= 24:
        raise ValueError(f"interval_hours must be between 1 and 24, got {interval_hours}")
    digest = hashlib.sha256(account_id.encode("utf-8")).digest()
    minute = int.from_bytes(digest[:4], "big") % 60
    hour_offset = int.from_bytes(digest[4:8], "big") % interval_hours
    hours = ",".join(str(h) for h in range(hour_offset, 24, interval_hours))
    return f"{minute} {hours} * * *"


def spread_delays(total: int, window_ms: int) -> list[int]:
    """Delay for each of ``total`` jobs so they spread evenly over the window."""
    if total <= 0:
        return []
    return [int(index / total * window_ms) for index in range(total)]


def window_start(now: datetime, window_minutes: int) -> datetime:
    """Start of the dispatch window containing ``now``."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = int((now - midnight).total_seconds() // 60)
    return midnight + timedelta(minutes=elapsed - elapsed % window_minutes)


class InitialSetupProcessor(Processor):
    """Registers the recurring sync for a newly connected account and syncs it once."""

    name = "initial-setup"
    payload_schema = InitialSetupPayload

    def __init__(self, db: DatabaseClient, interval_hours: int = 6):
        self.db = db
        self.interval_hours = interval_hours

    def process(self, payload: InitialSetupPayload, ctx: JobContext) -> dict:
        account = self.db.get_inbox_account(payload.inbox_account_id)
        if account is None:
            raise NotFoundError(f"Inbox account {payload.inbox_account_id} not found")

        key = schedule_key(account.id)
        cron = account_cron_pattern(account.id, self.interval_hours)
        ctx.queue.schedule_repeatable(key, "sync-scheduler", SyncSchedulerPayload(id=account.id), cron)
        self.db.update_inbox_account(account.id, schedule_id=key)

        job = ctx.queue.trigger("sync-scheduler", SyncSchedulerPayload(id=account.id, manual_sync=True))
        logger.info(f"Set up inbox account {account.id}: schedule {key} ({cron}), initial sync {job.id}")
        return {"schedule_id": key, "cron": cron, "initial_sync_job_id": job.id}


class SyncAccountsSchedulerProcessor(Processor):
    """Dispatches one sync per connected account, staggered across a window.

    Job ids include the window start, so re-running the dispatcher within
    the same window does not enqueue anything new.
    """

    name = "sync-accounts-scheduler"
    payload_schema = SyncAccountsSchedulerPayload

    def __init__(
        self,
        db: DatabaseClient,
        window_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.window_minutes = window_minutes
        self._clock = clock

    def process(self, payload: SyncAccountsSchedulerPayload, ctx: JobContext) -> dict:
        accounts = self.db.get_connected_inbox_accounts()
        if not accounts:
            logger.info("No connected inbox accounts to sync")
            return {"accounts": 0, "job_ids": []}

        window = window_start(self._clock(), self.window_minutes)
        delays = spread_delays(len(accounts), self.window_minutes * 60 * 1000)
        jobs = []
        for account, delay_ms in zip(accounts, delays):
            job_id = f"sync-{account.id}-{window:%Y%m%d%H%M}"
            jobs.append(ctx.queue.trigger(
                "sync-scheduler",
                SyncSchedulerPayload(id=account.id),
                delay_ms=delay_ms,
                job_id=job_id,
            ))

        logger.info(
            f"Dispatched sync for {len(accounts)} accounts over {self.window_minutes} minutes "
            f"(window {window:%Y-%m-%d %H:%M})"
        )
        return {
            "accounts": len(accounts),
            "job_ids": [job.id for job in jobs],
            "window": window.isoformat(),
        }
