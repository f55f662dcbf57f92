"""Attachment ingestion: channel adapters and mailbox providers."""

from .base import AttachmentAdapter, InboxProvider, ensure_extension, unique_filename
from .chat import SlackAdapter, TelegramAdapter, WhatsAppAdapter
from .documents import EInvoiceAdapter, ManualUploadAdapter
from .gmail import GmailProvider

__all__ = [
    "AttachmentAdapter",
    "InboxProvider",
    "ensure_extension",
    "unique_filename",
    "SlackAdapter",
    "WhatsAppAdapter",
    "TelegramAdapter",
    "EInvoiceAdapter",
    "ManualUploadAdapter",
    "GmailProvider",
]
