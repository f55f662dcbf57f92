"""Core job types and the processor interface."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from ..schemas import JobPayload, get_job_definition

if TYPE_CHECKING:
    from .queue import QueueManager

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus:
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    PENDING = frozenset({WAITING, DELAYED})
    TERMINAL = frozenset({COMPLETED, FAILED})


@dataclass
class Job:
    """A unit of work on a named queue.

    ``id`` doubles as the idempotency key: adding a job whose id already exists
    returns the stored job instead of creating a second one.
    """

    id: str
    name: str
    queue_name: str
    payload: dict[str, Any]
    max_attempts: int = 3
    attempts_made: int = 0
    priority: int = 0  # lower runs first
    run_at: datetime = field(default_factory=utcnow)
    status: str = JobStatus.WAITING
    progress: Any = None
    result: Any = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    repeat_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None  # lease held by the worker running it

    @property
    def is_finished(self) -> bool:
        return self.status in JobStatus.TERMINAL


@dataclass
class RepeatableJob:
    """Cron-driven template that enqueues one job per occurrence."""

    key: str
    name: str
    queue_name: str
    payload: dict[str, Any]
    cron: str
    next_run_at: datetime


@dataclass
class JobContext:
    """Per-execution handle passed to processors."""

    job: Job
    queue: "QueueManager"

    def update_progress(self, progress: Any) -> None:
        self.job.progress = progress
        self.queue.update_progress(self.job.id, progress)
        logger.debug(f"Job {self.job.name} ({self.job.id}) progress: {progress}")


class Processor(ABC):
    """Handler for one job name.

    The runner validates the payload against ``payload_schema``, asks
    ``should_process`` and only then calls ``process``. ``on_failed`` runs once
    the job has failed for good (non-retryable error or retries exhausted).
    """

    name: str = ""
    payload_schema: type[JobPayload] = JobPayload
    # Job names this processor blocks on with trigger_and_wait
    waits_on: tuple[str, ...] = ()

    @property
    def queue(self) -> str:
        return get_job_definition(self.name).queue

    def should_process(self, payload: JobPayload, ctx: JobContext) -> bool:
        return True

    @abstractmethod
    def process(self, payload: JobPayload, ctx: JobContext) -> Any:
        """Do the work. Exceptions are classified by the runner."""

    def on_failed(self, payload: JobPayload, error: BaseException) -> None:
        return None
