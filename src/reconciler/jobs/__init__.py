"""Job queue substrate: queues, backends, processors and workers."""

from .backends import JobBackend, MemoryBackend, PostgresBackend
from .base import Job, JobContext, JobStatus, Processor, RepeatableJob
from .batching import Settled, chunked, settle_all
from .queue import QueueManager
from .runner import JobRunner, LeaseKeeper, ProcessorRegistry, QueueWorker, WorkerPool

__all__ = [
    "Job",
    "JobContext",
    "JobStatus",
    "RepeatableJob",
    "Processor",
    "JobBackend",
    "MemoryBackend",
    "PostgresBackend",
    "QueueManager",
    "JobRunner",
    "ProcessorRegistry",
    "QueueWorker",
    "WorkerPool",
    "LeaseKeeper",
    "Settled",
    "chunked",
    "settle_all",
]
