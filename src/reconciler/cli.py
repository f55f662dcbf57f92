"""Command-line interface for the reconciliation pipeline."""

import argparse
import json
import logging
import sys
import uuid
from typing import Optional

from dotenv import load_dotenv

from .config import Config
from .jobs.base import Job, JobContext
from .scheduling import NoMatchSchedulerProcessor
from .schemas import NoMatchSchedulerPayload
from .worker import Services, build_queue, build_worker

logger = logging.getLogger(__name__)


def run_worker(config: Config, queues: Optional[list[str]], scheduler: bool) -> None:
    """Run queue workers until interrupted; one worker per queue group without --queue."""
    worker = build_worker(config, queues=queues, run_scheduler=scheduler)
    worker.run_forever()


def trigger(config: Config, name: str, payload: dict, delay_ms: int, job_id: Optional[str],
            wait: Optional[float]) -> None:
    queue = build_queue(config)
    if wait is not None:
        result = queue.trigger_and_wait(name, payload, timeout=wait, job_id=job_id)
        print(json.dumps(result, indent=2, default=str))
        return

    job = queue.trigger(name, payload, delay_ms=delay_ms, job_id=job_id)
    print(f"Enqueued {job.name} as {job.id} on {job.queue_name} (run at {job.run_at.isoformat()})")


def connect_account(config: Config, account_id: str) -> None:
    """Register the recurring sync for an account and trigger its first sync."""
    queue = build_queue(config)
    job = queue.trigger("initial-setup", {"inbox_account_id": account_id}, job_id=f"initial-setup-{account_id}")
    print(f"Enqueued initial setup for account {account_id} as {job.id}")


def sweep(config: Config, now: bool) -> None:
    """Run the no-match sweep in this process, or enqueue it."""
    queue = build_queue(config)
    if not now:
        job = queue.trigger("no-match-scheduler", {})
        print(f"Enqueued no-match sweep as {job.id}")
        return

    services = Services.from_config(config)
    processor = NoMatchSchedulerProcessor(
        services.db,
        enabled=config.is_production,
        cutoff_days=config.no_match_cutoff_days,
    )
    # Not enqueued, so no worker can pick up the same run
    job = Job(id=f"no-match-cli-{uuid.uuid4().hex}", name=processor.name,
              queue_name=processor.queue, payload={})
    result = processor.process(NoMatchSchedulerPayload(), JobContext(job=job, queue=queue))
    print(json.dumps(result, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reconciler", description="Receipt ingestion and matching pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run queue workers")
    worker.add_argument("--queue", action="append", dest="queues",
                        help="Queue to consume (repeatable); defaults to one worker per queue group")
    worker.add_argument("--scheduler", action="store_true", help="Also enqueue due repeatable jobs")

    trig = sub.add_parser("trigger", help="Enqueue a job")
    trig.add_argument("name", help="Job name, e.g. batch-process-matching")
    trig.add_argument("--payload", default="{}", help="JSON payload")
    trig.add_argument("--delay-ms", type=int, default=0)
    trig.add_argument("--job-id", help="Idempotency key")
    trig.add_argument("--wait", type=float, help="Wait up to this many seconds for the result")

    connect = sub.add_parser("connect-account", help="Set up syncing for an inbox account")
    connect.add_argument("account_id")

    sw = sub.add_parser("sweep", help="Move stale pending inbox items to no_match")
    sw.add_argument("--now", action="store_true", help="Run in this process instead of enqueueing")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Variables already in the environment win over .env
    load_dotenv()
    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.command == "worker":
        run_worker(config, args.queues, args.scheduler)
    elif args.command == "trigger":
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"Invalid --payload: {e}", file=sys.stderr)
            return 2
        trigger(config, args.name, payload, args.delay_ms, args.job_id, args.wait)
    elif args.command == "connect-account":
        connect_account(config, args.account_id)
    elif args.command == "sweep":
        sweep(config, args.now)
    return 0


if __name__ == "__main__":
    sys.exit(main())
