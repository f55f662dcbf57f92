"""Process wiring: clients, processors, queue and workers built from a Config."""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from .config import Config
from .ingestion import EInvoiceAdapter, SlackAdapter, TelegramAdapter, WhatsAppAdapter
from .ingestion.base import AttachmentAdapter
from .jobs import (
    JobBackend,
    JobRunner,
    MemoryBackend,
    PostgresBackend,
    ProcessorRegistry,
    QueueManager,
    QueueWorker,
    WorkerPool,
)
from .matching import (
    BatchProcessMatchingProcessor,
    LogNotificationDispatcher,
    MatchingEngine,
    MatchTransactionsBidirectionalProcessor,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from .processing import (
    AttachmentProcessor,
    BatchExtractInboxProcessor,
    ChannelUploadProcessor,
    DocumentClassificationProcessor,
    EmbedInboxProcessor,
)
from .scheduling import (
    SWEEP_CRON,
    SWEEP_SCHEDULE_KEY,
    InitialSetupProcessor,
    NoMatchSchedulerProcessor,
    SyncAccountsSchedulerProcessor,
    SyncSchedulerProcessor,
    gmail_provider_factory,
)
from .schemas import Queues
from .semantic import DocumentExtractionClient, EmbeddingClient
from .storage import DatabaseClient, S3Client

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """External clients shared by every processor in a process."""

    db: DatabaseClient
    s3: S3Client
    extractor: DocumentExtractionClient
    embedder: EmbeddingClient
    dispatcher: NotificationDispatcher

    @classmethod
    def from_config(cls, config: Config) -> "Services":
        if config.notification_webhook_url:
            dispatcher = WebhookNotificationDispatcher(config.notification_webhook_url)
        else:
            dispatcher = LogNotificationDispatcher()
        return cls(
            db=DatabaseClient(config.database_url),
            s3=S3Client(
                endpoint_url=config.s3_endpoint,
                bucket_name=config.s3_bucket,
                access_key_id=config.aws_access_key_id,
                secret_access_key=config.aws_secret_access_key,
            ),
            extractor=DocumentExtractionClient(
                api_url=config.inference_api_url,
                model_name=config.extraction_model,
                api_key=config.inference_api_key,
            ),
            embedder=EmbeddingClient(
                api_url=config.embedding_api_url or config.inference_api_url,
                model_name=config.embedding_model,
                api_key=config.inference_api_key,
            ),
            dispatcher=dispatcher,
        )


def build_adapters(config: Config) -> dict[str, AttachmentAdapter]:
    """Channel adapters for every channel with credentials configured."""
    adapters: dict[str, AttachmentAdapter] = {}
    if config.slack_bot_token:
        adapters[SlackAdapter.channel] = SlackAdapter(config.slack_bot_token)
    if config.whatsapp_access_token:
        adapters[WhatsAppAdapter.channel] = WhatsAppAdapter(config.whatsapp_access_token)
    if config.telegram_bot_token:
        adapters[TelegramAdapter.channel] = TelegramAdapter(config.telegram_bot_token)
    if config.einvoice_api_url and config.einvoice_api_key:
        adapters[EInvoiceAdapter.channel] = EInvoiceAdapter(config.einvoice_api_url, config.einvoice_api_key)
    return adapters


def build_registry(config: Config, services: Services) -> ProcessorRegistry:
    """Register one processor per job name."""
    db = services.db
    engine = MatchingEngine.from_config(db, config)
    return ProcessorRegistry([
        AttachmentProcessor(db, services.s3, services.extractor, config),
        BatchExtractInboxProcessor(db, services.s3, services.extractor, config),
        EmbedInboxProcessor(db, services.embedder),
        DocumentClassificationProcessor(db, services.s3, services.extractor, config.signed_url_expiry),
        ChannelUploadProcessor(db, services.s3, build_adapters(config), config.max_attachment_size),
        BatchProcessMatchingProcessor(engine, db, services.dispatcher),
        MatchTransactionsBidirectionalProcessor(engine, db, services.dispatcher),
        SyncSchedulerProcessor(
            db,
            services.s3,
            gmail_provider_factory(db, config.google_oauth2_client_id, config.google_oauth2_client_secret),
            services.dispatcher,
            max_attachment_size=config.max_attachment_size,
        ),
        InitialSetupProcessor(db, config.sync_interval_hours),
        SyncAccountsSchedulerProcessor(db, config.sync_window_minutes),
        NoMatchSchedulerProcessor(db, enabled=config.is_production, cutoff_days=config.no_match_cutoff_days),
    ])


def build_backend(config: Config) -> JobBackend:
    if config.job_backend == "memory":
        logger.warning("Using the in-memory job backend; jobs are lost when the process exits")
        return MemoryBackend()
    if config.job_backend == "postgres":
        return PostgresBackend(config.database_url)
    raise ValueError(f"Unknown job backend: {config.job_backend}")


def build_queue(config: Config) -> QueueManager:
    return QueueManager(build_backend(config))


def register_schedules(queue: QueueManager) -> None:
    """Register the global repeatable jobs."""
    queue.schedule_repeatable(SWEEP_SCHEDULE_KEY, "no-match-scheduler", {}, SWEEP_CRON)


def build_worker(
    config: Config,
    queues: Optional[Iterable[str]] = None,
    run_scheduler: bool = False,
    services: Optional[Services] = None,
) -> Union[QueueWorker, WorkerPool]:
    """Assemble a worker for the given queues.

    Without queues, returns a pool with one worker per ``Queues.GROUPS``
    entry so a job that waits on another (process-attachment on
    embed-inbox) never competes with it for threads. Only the first pool
    runs the repeatable-job loop.
    """
    services = services or Services.from_config(config)
    registry = build_registry(config, services)
    queue = build_queue(config)
    if run_scheduler:
        register_schedules(queue)
    runner = JobRunner(registry, queue)
    if queues:
        return QueueWorker(
            runner,
            queues=queues,
            concurrency=config.worker_concurrency,
            run_scheduler=run_scheduler,
        )
    return WorkerPool(
        QueueWorker(
            runner,
            queues=group,
            concurrency=config.worker_concurrency,
            run_scheduler=run_scheduler and i == 0,
        )
        for i, group in enumerate(Queues.GROUPS)
    )
