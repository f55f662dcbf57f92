"""Job storage backends: in-process (tests, local runs) and PostgreSQL."""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..errors import JobTimeoutError
from .base import Job, JobStatus, RepeatableJob, utcnow

logger = logging.getLogger(__name__)

JOB_FINISHED_CHANNEL = "job_finished"

# A claimed job whose lease is not renewed within this many seconds is
# considered abandoned and becomes claimable again
DEFAULT_LEASE_SECONDS = 60


class JobBackend(ABC):
    """Persistence and signalling for jobs."""

    @abstractmethod
    def add(self, job: Job) -> Job:
        """Store a job; returns the existing job when the id is taken."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def claim(self, queue_names: Iterable[str], lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        """Atomically take the next runnable job and mark it active.

        Runnable means waiting or delayed and due, or active with an expired
        lease (its worker died or was stopped). Either way the claim counts
        as one attempt.
        """

    @abstractmethod
    def extend_lease(self, job_id: str, lease_seconds: float) -> bool:
        """Push the lease of an active job forward; False once it is no longer active."""

    @abstractmethod
    def complete(self, job_id: str, result: Any) -> None:
        pass

    @abstractmethod
    def fail(self, job_id: str, error: str, category: str) -> None:
        """Mark a job as permanently failed."""

    @abstractmethod
    def retry(self, job_id: str, run_at: datetime, error: str) -> None:
        """Put an active job back as delayed until ``run_at``."""

    @abstractmethod
    def update_progress(self, job_id: str, progress: Any) -> None:
        pass

    @abstractmethod
    def wait_for(self, job_id: str, timeout: float) -> Job:
        """Block until the job is completed or failed.

        Raises:
            JobTimeoutError: If the job does not finish within timeout seconds
        """

    @abstractmethod
    def upsert_repeatable(self, repeatable: RepeatableJob) -> None:
        pass

    @abstractmethod
    def remove_repeatable(self, key: str) -> bool:
        pass

    @abstractmethod
    def get_repeatable(self, key: str) -> Optional[RepeatableJob]:
        pass

    @abstractmethod
    def due_repeatables(self, now: datetime) -> list[RepeatableJob]:
        pass

    @abstractmethod
    def advance_repeatable(self, key: str, next_run_at: datetime) -> None:
        pass

    def close(self) -> None:
        return None


class MemoryBackend(JobBackend):
    """Thread-safe in-memory backend."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._order: dict[str, int] = {}
        self._repeatables: dict[str, RepeatableJob] = {}
        self._seq = 0
        self._cond = threading.Condition()

    def add(self, job: Job) -> Job:
        with self._cond:
            existing = self._jobs.get(job.id)
            if existing is not None:
                return existing
            if job.run_at > self._clock():
                job.status = JobStatus.DELAYED
            self._jobs[job.id] = job
            self._seq += 1
            self._order[job.id] = self._seq
            self._cond.notify_all()
            return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._cond:
            return self._jobs.get(job_id)

    def jobs(self, name: Optional[str] = None, status: Optional[str] = None) -> list[Job]:
        """Snapshot of stored jobs in insertion order."""
        with self._cond:
            jobs = sorted(self._jobs.values(), key=lambda j: self._order[j.id])
        return [
            j for j in jobs
            if (name is None or j.name == name) and (status is None or j.status == status)
        ]

    @staticmethod
    def _runnable(job: Job, now: datetime) -> bool:
        if job.status in JobStatus.PENDING:
            return job.run_at <= now
        return job.status == JobStatus.ACTIVE and job.locked_until is not None and job.locked_until <= now

    def claim(self, queue_names: Iterable[str], lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        queues = set(queue_names)
        with self._cond:
            now = self._clock()
            runnable = [j for j in self._jobs.values() if j.queue_name in queues and self._runnable(j, now)]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.priority, j.run_at, self._order[j.id]))
            if job.status == JobStatus.ACTIVE:
                logger.warning(f"Reclaiming {job.name} ({job.id}): lease expired at {job.locked_until}")
            job.status = JobStatus.ACTIVE
            job.attempts_made += 1
            job.locked_until = now + timedelta(seconds=lease_seconds)
            return job

    def extend_lease(self, job_id: str, lease_seconds: float) -> bool:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.ACTIVE:
                return False
            job.locked_until = self._clock() + timedelta(seconds=lease_seconds)
            return True

    def _finish(self, job_id: str, status: str, **fields) -> None:
        with self._cond:
            job = self._jobs[job_id]
            job.status = status
            job.finished_at = self._clock()
            job.locked_until = None
            for key, value in fields.items():
                setattr(job, key, value)
            self._cond.notify_all()

    def complete(self, job_id: str, result: Any) -> None:
        self._finish(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, error: str, category: str) -> None:
        self._finish(job_id, JobStatus.FAILED, error=error, error_category=category)

    def retry(self, job_id: str, run_at: datetime, error: str) -> None:
        with self._cond:
            job = self._jobs[job_id]
            job.status = JobStatus.DELAYED
            job.run_at = run_at
            job.error = error
            job.locked_until = None

    def update_progress(self, job_id: str, progress: Any) -> None:
        with self._cond:
            if job_id in self._jobs:
                self._jobs[job_id].progress = progress

    def wait_for(self, job_id: str, timeout: float) -> Job:
        with self._cond:
            finished = self._cond.wait_for(
                lambda: job_id in self._jobs and self._jobs[job_id].is_finished,
                timeout=timeout,
            )
            if not finished:
                raise JobTimeoutError(f"Waiting for job {job_id}", timeout_seconds=timeout)
            return self._jobs[job_id]

    def upsert_repeatable(self, repeatable: RepeatableJob) -> None:
        with self._cond:
            self._repeatables[repeatable.key] = repeatable

    def remove_repeatable(self, key: str) -> bool:
        with self._cond:
            return self._repeatables.pop(key, None) is not None

    def get_repeatable(self, key: str) -> Optional[RepeatableJob]:
        with self._cond:
            return self._repeatables.get(key)

    def due_repeatables(self, now: datetime) -> list[RepeatableJob]:
        with self._cond:
            return [r for r in self._repeatables.values() if r.next_run_at <= now]

    def advance_repeatable(self, key: str, next_run_at: datetime) -> None:
        with self._cond:
            if key in self._repeatables:
                self._repeatables[key].next_run_at = next_run_at


class PostgresBackend(JobBackend):
    """Durable backend on the ``jobs`` and ``repeatable_jobs`` tables.

    Workers claim with ``FOR UPDATE SKIP LOCKED`` so any number of processes
    can poll the same queues. A claim stamps ``locked_until``; the running
    worker renews it, and an active row whose lease has lapsed is claimed
    again. Completion is broadcast with ``pg_notify`` on the ``job_finished``
    channel for trigger-and-wait callers.
    """

    _JOB_COLUMNS = """
        id, name, queue_name, payload, max_attempts, attempts_made, priority,
        run_at, status, progress, result, error, error_category, repeat_key,
        created_at, finished_at, locked_until
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._local = threading.local()

    def connect(self) -> psycopg.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            conn = psycopg.connect(self.database_url, row_factory=dict_row, autocommit=True)
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None and not conn.closed:
            conn.close()

    @staticmethod
    def _to_job(row: dict) -> Job:
        return Job(**row)

    def add(self, job: Job) -> Job:
        conn = self.connect()
        status = JobStatus.DELAYED if job.run_at > utcnow() else JobStatus.WAITING
        with conn.cursor() as cur:
            cur.execute(f"""
                INSERT INTO jobs (
                    id, name, queue_name, payload, max_attempts, attempts_made,
                    priority, run_at, status, repeat_key, created_at
                ) VALUES (%s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                RETURNING {self._JOB_COLUMNS}
            """, (
                job.id, job.name, job.queue_name, Jsonb(job.payload), job.max_attempts,
                job.priority, job.run_at, status, job.repeat_key, job.created_at,
            ))
            row = cur.fetchone()
        if row is None:
            existing = self.get(job.id)
            logger.debug(f"Job {job.id} already exists, not re-added")
            return existing
        return self._to_job(row)

    def get(self, job_id: str) -> Optional[Job]:
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute(f"SELECT {self._JOB_COLUMNS} FROM jobs WHERE id = %s", (job_id,))
            row = cur.fetchone()
            return self._to_job(row) if row else None

    def claim(self, queue_names: Iterable[str], lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        conn = self.connect()
        with conn.cursor() as cur:
            cur.execute(f"""
                UPDATE jobs
                SET status = %s,
                    attempts_made = attempts_made + 1,
                    locked_until = now() + make_interval(secs => %s),
                    updated_at = now()
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE queue_name = ANY(%s)
                      AND (
                        (status IN (%s, %s) AND run_at <= now())
                        OR (status = %s AND locked_until < now())
                      )
                    ORDER BY priority ASC, run_at ASC, created_at ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING {self._JOB_COLUMNS}
            """, (
                JobStatus.ACTIVE, lease_seconds, list(queue_names),
                JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE,
            ))
            row = cur.fetchone()
            return self._to_job(row) if row else None

    def extend_lease(self, job_id: str, lease_seconds: float) -> bool:
        conn = self.connect()
        cur = conn.execute("""
            UPDATE jobs SET locked_until = now() + make_interval(secs => %s)
            WHERE id = %s AND status = %s
        """, (lease_seconds, job_id, JobStatus.ACTIVE))
        return cur.rowcount > 0

    def _finish(self, job_id: str, sql: str, params: tuple) -> None:
        conn = self.connect()
        with conn.transaction():
            conn.execute(sql, params)
            conn.execute("SELECT pg_notify(%s, %s)", (JOB_FINISHED_CHANNEL, job_id))

    def complete(self, job_id: str, result: Any) -> None:
        self._finish(job_id, """
            UPDATE jobs
            SET status = %s, result = %s, locked_until = NULL,
                finished_at = now(), updated_at = now()
            WHERE id = %s
        """, (JobStatus.COMPLETED, Jsonb(result), job_id))

    def fail(self, job_id: str, error: str, category: str) -> None:
        self._finish(job_id, """
            UPDATE jobs
            SET status = %s, error = %s, error_category = %s, locked_until = NULL,
                finished_at = now(), updated_at = now()
            WHERE id = %s
        """, (JobStatus.FAILED, error, category, job_id))

    def retry(self, job_id: str, run_at: datetime, error: str) -> None:
        conn = self.connect()
        conn.execute("""
            UPDATE jobs
            SET status = %s, run_at = %s, error = %s, locked_until = NULL, updated_at = now()
            WHERE id = %s
        """, (JobStatus.DELAYED, run_at, error, job_id))

    def update_progress(self, job_id: str, progress: Any) -> None:
        conn = self.connect()
        conn.execute(
            "UPDATE jobs SET progress = %s, updated_at = now() WHERE id = %s",
            (Jsonb(progress), job_id),
        )

    def wait_for(self, job_id: str, timeout: float) -> Job:
        deadline = time.monotonic() + timeout
        # Dedicated connection: LISTEN must not share the claiming connection
        with psycopg.connect(self.database_url, row_factory=dict_row, autocommit=True) as conn:
            conn.execute(f"LISTEN {JOB_FINISHED_CHANNEL}")

            # The job may have finished before LISTEN took effect
            job = self.get(job_id)
            if job is not None and job.is_finished:
                return job

            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise JobTimeoutError(f"Waiting for job {job_id}", timeout_seconds=timeout)
                for notify in conn.notifies(timeout=remaining, stop_after=1):
                    if notify.payload == job_id:
                        job = self.get(job_id)
                        if job is not None and job.is_finished:
                            return job

    def upsert_repeatable(self, repeatable: RepeatableJob) -> None:
        conn = self.connect()
        conn.execute("""
            INSERT INTO repeatable_jobs (key, name, queue_name, payload, cron, next_run_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (key) DO UPDATE
            SET name = EXCLUDED.name,
                queue_name = EXCLUDED.queue_name,
                payload = EXCLUDED.payload,
                cron = EXCLUDED.cron,
                next_run_at = EXCLUDED.next_run_at
        """, (
            repeatable.key, repeatable.name, repeatable.queue_name,
            Jsonb(repeatable.payload), repeatable.cron, repeatable.next_run_at,
        ))

    def remove_repeatable(self, key: str) -> bool:
        conn = self.connect()
        cur = conn.execute("DELETE FROM repeatable_jobs WHERE key = %s", (key,))
        return cur.rowcount > 0

    def get_repeatable(self, key: str) -> Optional[RepeatableJob]:
        conn = self.connect()
        row = conn.execute("""
            SELECT key, name, queue_name, payload, cron, next_run_at
            FROM repeatable_jobs WHERE key = %s
        """, (key,)).fetchone()
        return RepeatableJob(**row) if row else None

    def due_repeatables(self, now: datetime) -> list[RepeatableJob]:
        conn = self.connect()
        rows = conn.execute("""
            SELECT key, name, queue_name, payload, cron, next_run_at
            FROM repeatable_jobs
            WHERE next_run_at <= %s
            ORDER BY next_run_at
        """, (now,)).fetchall()
        return [RepeatableJob(**row) for row in rows]

    def advance_repeatable(self, key: str, next_run_at: datetime) -> None:
        conn = self.connect()
        conn.execute(
            "UPDATE repeatable_jobs SET next_run_at = %s WHERE key = %s",
            (next_run_at, key),
        )


def serialize_result(result: Any) -> Any:
    """Convert a processor return value into JSON-compatible data."""
    if result is None:
        return None
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    return json.loads(json.dumps(result, default=str))


def delay_to_run_at(delay_ms: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(milliseconds=max(delay_ms, 0))
