"""Worker helpers run inside Modal functions: queue consumers and schedule triggers."""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

from reconciler.config import Config
from reconciler.jobs import Job
from reconciler.scheduling import SWEEP_CRON, SWEEP_SCHEDULE_KEY
from reconciler.scheduling.dispatch import window_start
from reconciler.worker import build_queue, build_worker

logger = logging.getLogger(__name__)


def run_queues(
    config: Config,
    queues: Optional[list[str]],
    run_seconds: int,
    run_scheduler: bool = False,
) -> dict:
    """Consume the given queues for a fixed time, then shut down cleanly.

    Args:
        config: Application configuration
        queues: Queue names to consume (one pool per queue group when None)
        run_seconds: Seconds to keep consuming before stopping
        run_scheduler: Also enqueue due repeatable jobs (per-account syncs, sweep)

    Returns:
        dict: Summary of this worker run
    """
    worker = build_worker(config, queues=queues, run_scheduler=run_scheduler)
    started = time.perf_counter()

    worker.start()
    try:
        time.sleep(run_seconds)
    finally:
        # Jobs still running after the join lose their lease and are reclaimed by the next worker
        worker.stop(timeout=60)

    elapsed = time.perf_counter() - started
    logger.info(f"Worker on {worker.queues} ran for {elapsed:.1f}s")
    return {
        "queues": worker.queues,
        "concurrency": worker.concurrency,
        "run_scheduler": run_scheduler,
        "elapsed_seconds": round(elapsed, 1),
    }


def enqueue_sync_dispatch(config: Config, now: datetime) -> Job:
    """Enqueue the centralized sync dispatch for the window containing ``now``.

    The window start is part of the job id, so repeated cron invocations in
    the same window enqueue one dispatch.
    """
    queue = build_queue(config)
    window = window_start(now, config.sync_window_minutes)
    return queue.trigger("sync-accounts-scheduler", {}, job_id=f"sync-accounts-{window:%Y%m%d%H%M}")


def enqueue_sweep(config: Config, now: datetime) -> Job:
    """Enqueue today's no-match sweep.

    Uses the same id the repeatable schedule gives this occurrence, so a
    worker running the schedule loop and this cron never both run it.
    """
    queue = build_queue(config)
    # The cron may fire a little after 02:00; step past it so get_prev lands on it
    occurrence = croniter(SWEEP_CRON, now + timedelta(minutes=1)).get_prev(datetime)
    return queue.trigger(
        "no-match-scheduler",
        {},
        job_id=f"{SWEEP_SCHEDULE_KEY}:{int(occurrence.timestamp())}",
    )
