"""Storage layer for database and S3 operations."""

from .database import DatabaseClient
from .attachments import S3Client, inbox_key

__all__ = ["DatabaseClient", "S3Client", "inbox_key"]
