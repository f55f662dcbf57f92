"""Reconciler scheduler - cron-driven dispatch, the daily sweep, and queue workers on Modal."""

import logging
import sys
from pathlib import Path
from typing import Optional

import modal

# Create Modal app
app = modal.App("reconciler-scheduler")

# Create image with all dependencies
image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install(
        "psycopg[binary]==3.2.3",
        "boto3==1.41.2",
        "openai==1.59.5",
        "pydantic==2.12.4",
        "requests==2.32.3",
        "croniter==5.0.1",
        "Pillow==11.1.0",
        "pillow-heif==0.21.0",
    )
    .add_local_dir(Path(__file__).parent.parent / "src" / "reconciler", "/root/reconciler")
    .add_local_file(Path(__file__).parent / "worker.py", "/root/worker.py")
)

# Modal secrets
secrets = [modal.Secret.from_name("reconciler-secrets")]

# Worker pools spawned each hour; the first also runs the repeatable-job loop
WORKER_POOLS = [
    {"queues": ["inbox-provider"], "run_scheduler": True},
    {"queues": ["inbox", "documents"], "run_scheduler": False},
    {"queues": ["embeddings", "transactions"], "run_scheduler": False},
]

logger = logging.getLogger(__name__)


@app.function(
    image=image,
    secrets=secrets,
    timeout=3600,
)
def queue_worker(queues: Optional[list[str]] = None, run_seconds: int = 3300, run_scheduler: bool = False) -> dict:
    """Consume job queues for most of an hour.

    Args:
        queues: Queue names to consume (one pool per queue group when None)
        run_seconds: Seconds to consume before shutting down (default: 55 minutes)
        run_scheduler: Also enqueue due repeatable jobs

    Returns:
        dict: Summary of the worker run
    """
    sys.path.insert(0, "/root")

    from reconciler.config import Config
    from worker import run_queues

    logging.basicConfig(level=logging.INFO)

    config = Config.from_env()
    return run_queues(config, queues, run_seconds, run_scheduler=run_scheduler)


@app.function(
    image=image,
    secrets=secrets,
    schedule=modal.Cron("0 * * * *"),
    timeout=3600,
)
def scheduler(run_seconds: int = 3300) -> dict:
    """Hourly orchestration.

    Workflow:
    1. Enqueue the centralized sync dispatch for this window
    2. Spawn one worker per pool and wait for them to finish
    """
    sys.path.insert(0, "/root")

    from reconciler.config import Config
    from reconciler.jobs.base import utcnow
    from worker import enqueue_sync_dispatch

    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger(__name__)

    logger.info("=" * 80)
    logger.info("SCHEDULER STARTED")
    logger.info("=" * 80)

    config = Config.from_env()

    # Step 1: Dispatch account syncs
    logger.info("[1] Enqueueing sync dispatch...")
    dispatch = enqueue_sync_dispatch(config, utcnow())
    logger.info(f"Sync dispatch job: {dispatch.id}")

    # Step 2: Spawn workers
    logger.info(f"[2] Spawning {len(WORKER_POOLS)} workers...")
    calls = []
    for pool in WORKER_POOLS:
        call = queue_worker.spawn(
            queues=pool["queues"],
            run_seconds=run_seconds,
            run_scheduler=pool["run_scheduler"],
        )
        calls.append((pool["queues"], call))

    results = []
    for queues, call in calls:
        try:
            results.append(call.get())
            logger.info(f"Worker for {queues} completed")
        except Exception as e:
            logger.error(f"Worker for {queues} failed: {e}")
            results.append({"queues": queues, "error": str(e)})

    logger.info("=" * 80)
    logger.info("SCHEDULER COMPLETE")
    logger.info("=" * 80)

    return {
        "dispatch_job_id": dispatch.id,
        "workers_spawned": len(calls),
        "workers_failed": sum(1 for r in results if "error" in r),
        "results": results,
    }


@app.function(
    image=image,
    secrets=secrets,
    schedule=modal.Cron("0 2 * * *"),
    timeout=600,
)
def no_match_sweep() -> dict:
    """Enqueue the daily no-match sweep; an inbox worker runs it."""
    sys.path.insert(0, "/root")

    from reconciler.config import Config
    from reconciler.jobs.base import utcnow
    from worker import enqueue_sweep

    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger(__name__)

    config = Config.from_env()
    job = enqueue_sweep(config, utcnow())
    logger.info(f"No-match sweep job: {job.id} ({job.status})")
    return {"job_id": job.id, "status": job.status}


@app.local_entrypoint()
def main(run_seconds: int = 120):
    """Local entrypoint for testing.

    Args:
        run_seconds: How long each spawned worker consumes (default: 2 minutes for testing)
    """
    print(f"Running scheduler with run_seconds={run_seconds}")
    result = scheduler.remote(run_seconds=run_seconds)
    print(f"\nScheduler Result: {result}")
