"""Attachment processing: extraction, embedding, classification and uploads."""

from .attachments import AttachmentProcessor
from .batch_extraction import BatchExtractInboxProcessor
from .classification import DocumentClassificationProcessor
from .email_parser import EmailParser
from .embeddings import EmbedInboxProcessor, prepare_inbox_text
from .uploads import ChannelUploadProcessor

__all__ = [
    "AttachmentProcessor",
    "BatchExtractInboxProcessor",
    "DocumentClassificationProcessor",
    "EmailParser",
    "EmbedInboxProcessor",
    "prepare_inbox_text",
    "ChannelUploadProcessor",
]
