"""Pydantic models aligned with PostgreSQL schema and internal processing."""

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class InboxStatus:
    """Lifecycle states of an inbox item.

    new -> processing -> analyzing -> pending -> no_match
    processing/analyzing -> other (non-financial documents)
    """

    NEW = "new"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    PENDING = "pending"
    NO_MATCH = "no_match"
    OTHER = "other"

    # A job outcome must never leave an item in one of these
    TRANSIENT = frozenset({PROCESSING, ANALYZING})

    # States a first extraction attempt may claim
    CLAIMABLE = frozenset({NEW})

    # A retried or reclaimed attempt also takes back what its earlier attempt left
    RECLAIMABLE = frozenset({NEW, PROCESSING, PENDING})


class DocumentType:
    INVOICE = "invoice"
    EXPENSE = "expense"
    OTHER = "other"


class MatchType:
    AUTO_MATCHED = "auto_matched"
    HIGH_CONFIDENCE = "high_confidence"
    SUGGESTED = "suggested"


class MatchAction:
    AUTO_MATCHED = "auto_matched"
    SUGGESTION_CREATED = "suggestion_created"
    NO_MATCH_YET = "no_match_yet"


# ============================================================================
# Database Models (aligned with PostgreSQL schema)
# ============================================================================


class InboxItem(BaseModel):
    """A received document awaiting reconciliation."""

    id: str
    team_id: str
    reference_id: Optional[str] = None  # channel-scoped dedup key
    file_path: list[str] = Field(default_factory=list)
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None

    # Extracted data
    display_name: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    base_amount: Optional[Decimal] = None  # amount in the team's base currency
    base_currency: Optional[str] = None
    date: Optional[dt.date] = None
    invoice_number: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_type: Optional[str] = None
    document_type: Optional[str] = None  # "invoice", "expense", "other"
    website: Optional[str] = None
    sender_email: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    summary: Optional[str] = None

    # Matching
    matched_transaction_id: Optional[str] = None
    group_id: Optional[str] = None
    status: str = InboxStatus.NEW

    source_metadata: Optional[dict[str, Any]] = None
    inbox_account_id: Optional[str] = None

    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def file_key(self) -> str:
        return "/".join(self.file_path)


class InboxEmbedding(BaseModel):
    """Embedding vector stored for an inbox item (one per item)."""

    inbox_id: str
    team_id: str
    embedding: list[float]
    source_text: str
    model: str

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    """Bank ledger entry (read-only, managed by the accounting subsystem)."""

    id: str
    team_id: str
    name: str
    amount: Decimal
    currency: str
    base_amount: Optional[Decimal] = None
    base_currency: Optional[str] = None
    date: dt.date
    status: str = "posted"
    recurring: bool = False
    matched_inbox_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InboxAccount(BaseModel):
    """Connected mailbox that is synced on a schedule."""

    id: str
    team_id: str
    provider: str  # "gmail"
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[dt.datetime] = None
    status: str = "connected"  # "connected", "disconnected"
    last_accessed: Optional[dt.datetime] = None
    schedule_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BlocklistEntry(BaseModel):
    """Sender domain or address whose attachments are ignored."""

    team_id: str
    type: str  # "domain", "email"
    value: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Internal Processing Models (not stored in database)
# ============================================================================


class RawAttachment(BaseModel):
    """Attachment bytes as produced by an ingestion adapter."""

    team_id: str
    data: bytes
    mimetype: str
    filename: str
    reference_id: str
    website: Optional[str] = None
    sender_email: Optional[str] = None
    source_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


class EmailAttachment(BaseModel):
    """Email attachment with raw data (internal processing)."""

    filename: str
    content_type: str
    data: bytes
    size_bytes: int


class ParsedEmail(BaseModel):
    """Parsed email data (internal processing)."""

    subject: str
    from_address: str
    to_address: Optional[str] = None
    date: str
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    message_id: Optional[str] = None  # Email Message-ID header


class ExtractionResult(BaseModel):
    """Structured fields returned by the document extraction gateway."""

    document_type: str = DocumentType.OTHER
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    date: Optional[dt.date] = None
    vendor_name: Optional[str] = None
    invoice_number: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_type: Optional[str] = None
    website: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    content: Optional[str] = None
    language: Optional[str] = None


class DocumentClassification(BaseModel):
    """Lightweight tags/summary for a stored document."""

    title: Optional[str] = None
    summary: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class EmbeddingResult(BaseModel):
    vector: list[float]
    model: str


class MatchSuggestion(BaseModel):
    """Scored pairing of an inbox item and a transaction (not persisted)."""

    transaction_id: str
    inbox_id: str
    confidence_score: float
    match_type: str  # MatchType
    amount_score: float
    currency_score: float
    date_score: float
    embedding_score: float
    is_already_matched: bool = False
    is_cross_currency: bool = False


class MatchOutcome(BaseModel):
    action: str  # MatchAction
    suggestion: Optional[MatchSuggestion] = None


# ============================================================================
# Job Result Models
# ============================================================================


class BatchMatchingResult(BaseModel):
    """Counts reported by batch-process-matching."""

    processed: int = 0
    auto_matched: int = 0
    suggestions: int = 0
    no_matches: int = 0
    errors: int = 0


class PhaseCounts(BaseModel):
    processed: int = 0
    auto_matched: int = 0
    suggestions: int = 0
    errors: int = 0


class BidirectionalMatchingResult(BaseModel):
    """Counts reported by match-transactions-bidirectional."""

    forward: PhaseCounts = Field(default_factory=PhaseCounts)
    reverse: PhaseCounts = Field(default_factory=PhaseCounts)

    @property
    def total_auto_matched(self) -> int:
        return self.forward.auto_matched + self.reverse.auto_matched

    @property
    def total_suggestions(self) -> int:
        return self.forward.suggestions + self.reverse.suggestions


class SyncResult(BaseModel):
    """Summary of one provider sync run."""

    account_id: str
    attachments_found: int = 0
    already_processed: int = 0
    too_large: int = 0
    blocked_domain: int = 0
    blocked_email: int = 0
    uploaded: int = 0
    upload_errors: int = 0
    jobs_triggered: int = 0


class SweepResult(BaseModel):
    """Summary of a no-match sweep."""

    skipped: bool = False
    cutoff: Optional[dt.datetime] = None
    total_updated: int = 0
    per_team: dict[str, int] = Field(default_factory=dict)
