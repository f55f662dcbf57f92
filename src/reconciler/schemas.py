"""Job payload contracts.

Payloads are validated when a job is enqueued and again when a worker picks it
up. On the wire they use camelCase keys; Python code uses snake_case.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Queues:
    INBOX = "inbox"
    EMBEDDINGS = "embeddings"
    INBOX_PROVIDER = "inbox-provider"
    TRANSACTIONS = "transactions"
    DOCUMENTS = "documents"

    ALL = (INBOX, EMBEDDINGS, INBOX_PROVIDER, TRANSACTIONS, DOCUMENTS)

    # One worker pool per group; a job that waits on another never shares a pool with it
    GROUPS = ((INBOX_PROVIDER,), (INBOX, DOCUMENTS), (EMBEDDINGS, TRANSACTIONS))


class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EmbedInboxPayload(JobPayload):
    inbox_id: str
    team_id: str


class BatchProcessMatchingPayload(JobPayload):
    team_id: str
    inbox_ids: list[str] = Field(min_length=1)


class MatchTransactionsBidirectionalPayload(JobPayload):
    team_id: str
    new_transaction_ids: list[str]


class ProcessAttachmentPayload(JobPayload):
    team_id: str
    mimetype: str
    size: int
    file_path: list[str] = Field(min_length=1)
    reference_id: Optional[str] = None
    website: Optional[str] = None
    sender_email: Optional[str] = None
    inbox_account_id: Optional[str] = None
    display_name: Optional[str] = None
    source_metadata: Optional[dict[str, Any]] = None

    @property
    def filename(self) -> str:
        return self.file_path[-1]


class BatchExtractInboxPayload(JobPayload):
    team_id: str
    inbox_ids: list[str] = Field(min_length=1)
    inbox_account_id: Optional[str] = None


class SyncSchedulerPayload(JobPayload):
    id: str
    manual_sync: bool = False


class InitialSetupPayload(JobPayload):
    inbox_account_id: str


class NoMatchSchedulerPayload(JobPayload):
    pass


class SyncAccountsSchedulerPayload(JobPayload):
    pass


class ChannelUploadPayload(JobPayload):
    team_id: str
    channel: str  # "slack", "whatsapp", "telegram", "einvoice"
    file_id: str
    filename: Optional[str] = None
    mimetype: Optional[str] = None
    caption: Optional[str] = None
    source_metadata: dict[str, Any] = Field(default_factory=dict)


class ClassifyDocumentPayload(JobPayload):
    inbox_id: str
    team_id: str


@dataclass(frozen=True)
class JobDefinition:
    name: str
    queue: str
    schema: type[JobPayload]
    max_attempts: int = 3


JOB_DEFINITIONS = MappingProxyType({
    d.name: d
    for d in (
        JobDefinition("embed-inbox", Queues.EMBEDDINGS, EmbedInboxPayload),
        JobDefinition("batch-process-matching", Queues.INBOX, BatchProcessMatchingPayload),
        JobDefinition(
            "match-transactions-bidirectional", Queues.TRANSACTIONS,
            MatchTransactionsBidirectionalPayload,
        ),
        JobDefinition("process-attachment", Queues.INBOX, ProcessAttachmentPayload),
        JobDefinition("sync-scheduler", Queues.INBOX_PROVIDER, SyncSchedulerPayload),
        JobDefinition("batch-extract-inbox", Queues.INBOX_PROVIDER, BatchExtractInboxPayload, max_attempts=2),
        JobDefinition("initial-setup", Queues.INBOX_PROVIDER, InitialSetupPayload),
        JobDefinition("no-match-scheduler", Queues.INBOX, NoMatchSchedulerPayload, max_attempts=1),
        JobDefinition(
            "sync-accounts-scheduler", Queues.INBOX_PROVIDER, SyncAccountsSchedulerPayload,
            max_attempts=1,
        ),
        JobDefinition("channel-upload", Queues.INBOX, ChannelUploadPayload),
        JobDefinition("classify-document", Queues.DOCUMENTS, ClassifyDocumentPayload, max_attempts=2),
    )
})


def get_job_definition(name: str) -> JobDefinition:
    """Look up the contract for a job name.

    Raises:
        KeyError: If the job name is unknown
    """
    try:
        return JOB_DEFINITIONS[name]
    except KeyError:
        raise KeyError(f"Unknown job: {name}") from None
