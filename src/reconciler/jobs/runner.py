"""Consumer side: processor registry, job execution and worker loops."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, Optional

from pydantic import ValidationError

from ..errors import ErrorCategory, JobTimeoutError, classify_error, is_retryable, retry_delay_ms
from ..schemas import get_job_definition
from .backends import DEFAULT_LEASE_SECONDS, JobBackend, serialize_result
from .base import Job, JobContext, Processor, utcnow
from .queue import QueueManager

logger = logging.getLogger(__name__)


class ProcessorRegistry:
    """Explicit job-name -> processor table handed to workers."""

    def __init__(self, processors: Iterable[Processor] = ()):
        self._processors: dict[str, Processor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: Processor) -> None:
        if not processor.name:
            raise ValueError(f"{type(processor).__name__} has no job name")
        if processor.name in self._processors:
            raise ValueError(f"Processor already registered for {processor.name}")
        self._processors[processor.name] = processor

    def get(self, name: str) -> Processor:
        try:
            return self._processors[name]
        except KeyError:
            raise KeyError(f"No processor registered for job {name}") from None

    def queues(self) -> set[str]:
        return {processor.queue for processor in self._processors.values()}

    def blocking_conflicts(self, queues: Iterable[str]) -> list[tuple[str, str]]:
        """(waiting job, awaited job) pairs that would both run from ``queues``."""
        served = set(queues)
        conflicts = []
        for processor in self._processors.values():
            if processor.queue not in served:
                continue
            for awaited in processor.waits_on:
                if get_job_definition(awaited).queue in served:
                    conflicts.append((processor.name, awaited))
        return conflicts

    def __contains__(self, name: str) -> bool:
        return name in self._processors

    def __iter__(self) -> Iterator[Processor]:
        return iter(self._processors.values())

    def __len__(self) -> int:
        return len(self._processors)


class JobRunner:
    """Runs one claimed job: validate, should_process, process, settle."""

    def __init__(
        self,
        registry: ProcessorRegistry,
        queue: QueueManager,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.queue = queue
        self.backend: JobBackend = queue.backend
        self._clock = clock

    def run(self, job: Job) -> None:
        try:
            processor = self.registry.get(job.name)
        except KeyError as e:
            logger.error(f"Job {job.id}: {e}")
            self.backend.fail(job.id, str(e), ErrorCategory.VALIDATION.value)
            return

        try:
            payload = processor.payload_schema.model_validate(job.payload)
        except ValidationError as e:
            logger.error(f"Invalid payload for {job.name} ({job.id}): {e}")
            self.backend.fail(job.id, str(e), ErrorCategory.VALIDATION.value)
            return

        # Reclaimed after its worker vanished during the last allowed attempt
        if job.attempts_made > job.max_attempts:
            error = JobTimeoutError(f"{job.name} ({job.id}) was abandoned by its worker on attempt {job.max_attempts}")
            self._fail(job, processor, payload, error, ErrorCategory.TIMEOUT)
            return

        ctx = JobContext(job=job, queue=self.queue)
        logger.info(f"Running {job.name} ({job.id}), attempt {job.attempts_made}/{job.max_attempts}")

        try:
            if not processor.should_process(payload, ctx):
                logger.info(f"Skipping {job.name} ({job.id}): should_process returned False")
                self.backend.complete(job.id, {"skipped": True})
                return
            result = processor.process(payload, ctx)
        except Exception as e:
            self._handle_failure(job, processor, payload, e)
            return

        self.backend.complete(job.id, serialize_result(result))
        logger.info(f"Completed {job.name} ({job.id})")

    def _handle_failure(self, job: Job, processor: Processor, payload, error: Exception) -> None:
        category = classify_error(error)

        if is_retryable(error) and job.attempts_made < job.max_attempts:
            delay = retry_delay_ms(category, job.attempts_made)
            run_at = self._clock() + timedelta(milliseconds=delay)
            logger.warning(
                f"{job.name} ({job.id}) failed with {category.value} error, "
                f"retrying in {delay}ms: {error}"
            )
            self.backend.retry(job.id, run_at, str(error))
            return

        logger.error(
            f"{job.name} ({job.id}) failed permanently after {job.attempts_made} attempt(s) "
            f"[{category.value}]: {error}",
            exc_info=error,
        )
        self._fail(job, processor, payload, error, category)

    def _fail(self, job: Job, processor: Processor, payload, error: Exception, category: ErrorCategory) -> None:
        # Release the owned row before waking any trigger-and-wait caller
        try:
            processor.on_failed(payload, error)
        except Exception as e:
            logger.error(f"on_failed hook for {job.name} ({job.id}) raised: {e}", exc_info=True)
        self.backend.fail(job.id, str(error), category.value)


class LeaseKeeper:
    """Renews the leases of the jobs a worker is running from one background thread."""

    def __init__(self, backend: JobBackend, lease_seconds: float = DEFAULT_LEASE_SECONDS):
        self.backend = backend
        self.lease_seconds = lease_seconds
        self._held: set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="lease-keeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    @contextmanager
    def hold(self, job_id: str):
        with self._lock:
            self._held.add(job_id)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(job_id)

    def renew(self) -> int:
        """Extend every held lease once; returns how many were extended."""
        with self._lock:
            held = list(self._held)
        renewed = 0
        for job_id in held:
            try:
                if self.backend.extend_lease(job_id, self.lease_seconds):
                    renewed += 1
            except Exception as e:
                logger.warning(f"Could not renew lease of job {job_id}: {e}")
        return renewed

    def _loop(self) -> None:
        while not self._stop.wait(self.lease_seconds / 3):
            self.renew()


class QueueWorker:
    """Polls queues and runs jobs on a fixed number of threads.

    Args:
        runner: Job runner
        queues: Queue names to consume; defaults to every queue in the registry
        concurrency: Number of jobs run in parallel
        poll_interval: Seconds to sleep when no job is runnable
        run_scheduler: Also enqueue due repeatable jobs from a background thread
        lease_seconds: Lease taken on each claimed job, renewed while it runs

    Raises:
        ValueError: If a served processor waits on a job from a served queue;
            both would compete for the same threads
    """

    def __init__(
        self,
        runner: JobRunner,
        queues: Optional[Iterable[str]] = None,
        concurrency: int = 4,
        poll_interval: float = 0.5,
        run_scheduler: bool = False,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        self.runner = runner
        self.queues = sorted(queues) if queues else sorted(runner.registry.queues())
        conflicts = runner.registry.blocking_conflicts(self.queues)
        if conflicts:
            pairs = ", ".join(f"{waiting} waits on {awaited}" for waiting, awaited in conflicts)
            raise ValueError(f"Queues {self.queues} cannot share one worker: {pairs}")
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.run_scheduler = run_scheduler
        self.lease_seconds = lease_seconds
        self.leases = LeaseKeeper(runner.backend, lease_seconds)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        logger.info(f"Starting worker on queues {self.queues} with concurrency {self.concurrency}")
        self._stop.clear()
        self.leases.start()
        for i in range(self.concurrency):
            thread = threading.Thread(target=self._loop, name=f"worker-{'-'.join(self.queues)}-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        if self.run_scheduler:
            thread = threading.Thread(target=self._schedule_loop, name="scheduler", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        # Jobs still running past the join keep their lease only until it lapses
        self.leases.stop()
        logger.info(f"Worker on {self.queues} stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """Run jobs on the calling thread until no job is runnable.

        Returns:
            int: Number of jobs run
        """
        owns_leases = not self.leases.running
        if owns_leases:
            self.leases.start()
        count = 0
        try:
            while max_jobs is None or count < max_jobs:
                job = self.runner.backend.claim(self.queues, self.lease_seconds)
                if job is None:
                    break
                self._execute(job)
                count += 1
        finally:
            if owns_leases:
                self.leases.stop()
        return count

    def _execute(self, job: Job) -> None:
        with self.leases.hold(job.id):
            self.runner.run(job)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self.runner.backend.claim(self.queues, self.lease_seconds)
            except Exception as e:
                logger.error(f"Failed to claim job: {e}", exc_info=True)
                self._stop.wait(self.poll_interval)
                continue
            if job is None:
                self._stop.wait(self.poll_interval)
                continue
            self._execute(job)

    def _schedule_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.runner.queue.enqueue_due_repeatables()
            except Exception as e:
                logger.error(f"Failed to enqueue repeatable jobs: {e}", exc_info=True)
            self._stop.wait(max(self.poll_interval, 1.0))


class WorkerPool:
    """One QueueWorker per queue group, run side by side in this process."""

    def __init__(self, workers: Iterable[QueueWorker]):
        self.workers = list(workers)
        self._stop = threading.Event()

    @property
    def queues(self) -> list[list[str]]:
        return [worker.queues for worker in self.workers]

    @property
    def concurrency(self) -> int:
        return sum(worker.concurrency for worker in self.workers)

    def start(self) -> None:
        self._stop.clear()
        for worker in self.workers:
            worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for worker in self.workers:
            worker.stop(timeout)

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()
