"""Producer-side API: enqueue, schedule and await jobs."""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from croniter import croniter

from ..errors import ErrorCategory, JobFailedError
from ..schemas import JobPayload, get_job_definition
from .backends import JobBackend, delay_to_run_at
from .base import Job, JobStatus, RepeatableJob, utcnow

logger = logging.getLogger(__name__)

PayloadLike = Union[JobPayload, dict[str, Any]]


class QueueManager:
    """Validates payloads and hands jobs to a backend.

    Args:
        backend: Job storage backend
        clock: Source of "now" (UTC), overridable in tests
    """

    def __init__(self, backend: JobBackend, clock: Callable[[], datetime] = utcnow):
        self.backend = backend
        self._clock = clock

    def _validate(self, name: str, payload: PayloadLike) -> JobPayload:
        definition = get_job_definition(name)
        if isinstance(payload, definition.schema):
            return payload
        if isinstance(payload, JobPayload):
            payload = payload.model_dump()
        return definition.schema.model_validate(payload)

    def trigger(
        self,
        name: str,
        payload: PayloadLike,
        *,
        delay_ms: int = 0,
        priority: int = 0,
        job_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """Enqueue a job on the queue its contract names.

        Args:
            name: Job name (e.g. "embed-inbox")
            payload: Payload model or dict (camelCase or snake_case keys)
            delay_ms: Do not run before now + delay_ms
            priority: Lower values are claimed first
            job_id: Idempotency key; an existing job with this id is returned as-is
            max_attempts: Override the contract's attempt budget

        Returns:
            Job: The stored job

        Raises:
            pydantic.ValidationError: If the payload does not satisfy the contract
        """
        definition = get_job_definition(name)
        validated = self._validate(name, payload)
        now = self._clock()
        job = Job(
            id=job_id or uuid.uuid4().hex,
            name=name,
            queue_name=definition.queue,
            payload=validated.to_wire(),
            max_attempts=max_attempts or definition.max_attempts,
            priority=priority,
            run_at=delay_to_run_at(delay_ms, now),
            created_at=now,
        )
        stored = self.backend.add(job)
        if stored is not job and stored.created_at != job.created_at:
            logger.info(f"Job {name} with id {job.id} already exists, skipping")
        else:
            logger.debug(f"Enqueued {name} ({stored.id}) on {definition.queue}, delay={delay_ms}ms")
        return stored

    def batch_trigger(self, name: str, payloads: Iterable[PayloadLike], **kwargs) -> list[Job]:
        return [self.trigger(name, payload, **kwargs) for payload in payloads]

    def trigger_and_wait(self, name: str, payload: PayloadLike, timeout: float, **kwargs) -> Any:
        """Enqueue a job and block until it finishes.

        Args:
            name: Job name
            payload: Job payload
            timeout: Seconds to wait for completion
            **kwargs: Passed to trigger()

        Returns:
            The job's stored result

        Raises:
            JobTimeoutError: If the job does not finish in time
            JobFailedError: If the job fails permanently
        """
        job_id = kwargs.pop("job_id", None) or f"{name}-{uuid.uuid4().hex}"
        job = self.trigger(name, payload, job_id=job_id, **kwargs)
        finished = self.backend.wait_for(job.id, timeout)
        if finished.status == JobStatus.FAILED:
            category = ErrorCategory(finished.error_category or ErrorCategory.RETRYABLE.value)
            raise JobFailedError(finished.id, name, finished.error or "unknown error", category)
        return finished.result

    def update_progress(self, job_id: str, progress: Any) -> None:
        self.backend.update_progress(job_id, progress)

    def schedule_repeatable(self, key: str, name: str, payload: PayloadLike, cron: str) -> RepeatableJob:
        """Register (or replace) a cron-driven job template.

        Args:
            key: Stable identifier for the schedule (e.g. "inbox-sync-<account>")
            name: Job name to enqueue on each occurrence
            payload: Payload for each occurrence
            cron: Five-field cron expression, evaluated in UTC

        Returns:
            RepeatableJob: The stored schedule
        """
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron}")
        definition = get_job_definition(name)
        validated = self._validate(name, payload)
        repeatable = RepeatableJob(
            key=key,
            name=name,
            queue_name=definition.queue,
            payload=validated.to_wire(),
            cron=cron,
            next_run_at=croniter(cron, self._clock()).get_next(datetime),
        )
        self.backend.upsert_repeatable(repeatable)
        logger.info(f"Scheduled {name} as {key} with cron '{cron}' (next run {repeatable.next_run_at})")
        return repeatable

    def remove_repeatable(self, key: str) -> bool:
        removed = self.backend.remove_repeatable(key)
        if removed:
            logger.info(f"Removed repeatable job {key}")
        return removed

    def enqueue_due_repeatables(self, now: Optional[datetime] = None) -> list[Job]:
        """Enqueue one job per due schedule occurrence and advance the schedules.

        The occurrence timestamp is part of the job id, so concurrent
        schedulers enqueue each occurrence once.
        """
        now = now or self._clock()
        enqueued = []
        for repeatable in self.backend.due_repeatables(now):
            occurrence = int(repeatable.next_run_at.timestamp())
            job = self.trigger(
                repeatable.name,
                repeatable.payload,
                job_id=f"{repeatable.key}:{occurrence}",
            )
            enqueued.append(job)
            self.backend.advance_repeatable(
                repeatable.key, croniter(repeatable.cron, now).get_next(datetime)
            )
        if enqueued:
            logger.info(f"Enqueued {len(enqueued)} repeatable job(s)")
        return enqueued
