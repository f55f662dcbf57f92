"""Receipt and invoice reconciliation pipeline - documents in, matched transactions out."""

# Models
from .models import (
    # Database models
    InboxItem,
    InboxEmbedding,
    InboxAccount,
    Transaction,
    BlocklistEntry,
    # Processing models
    RawAttachment,
    ExtractionResult,
    EmbeddingResult,
    MatchSuggestion,
    MatchOutcome,
    # Status values
    InboxStatus,
    MatchAction,
    MatchType,
)

# Processing
from .processing import EmailParser

# Jobs
from .jobs import QueueManager, MemoryBackend, PostgresBackend, QueueWorker

# Matching
from .matching import MatchingEngine

# Storage
from .storage import DatabaseClient, S3Client

# Configuration
from .config import Config

__version__ = "0.1.0"

__all__ = [
    # Models
    "InboxItem",
    "InboxEmbedding",
    "InboxAccount",
    "Transaction",
    "BlocklistEntry",
    "RawAttachment",
    "ExtractionResult",
    "EmbeddingResult",
    "MatchSuggestion",
    "MatchOutcome",
    "InboxStatus",
    "MatchAction",
    "MatchType",
    # Components
    "EmailParser",
    "QueueManager",
    "MemoryBackend",
    "PostgresBackend",
    "QueueWorker",
    "MatchingEngine",
    "DatabaseClient",
    "S3Client",
    "Config",
]
