"""Configuration management for the reconciler application."""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    # Database
    database_url: str

    # S3/R2
    s3_endpoint: str
    s3_bucket: str
    aws_access_key_id: str
    aws_secret_access_key: str

    # Inference (document extraction + embeddings)
    inference_api_url: str
    inference_api_key: str = "not-needed"
    extraction_model: str = "Qwen/Qwen2.5-VL-7B-Instruct"
    embedding_api_url: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"

    # OAuth (Gmail provider sync)
    google_oauth2_client_id: Optional[str] = None
    google_oauth2_client_secret: Optional[str] = None

    # Chat channels / e-invoice network
    slack_bot_token: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    einvoice_api_url: Optional[str] = None
    einvoice_api_key: Optional[str] = None

    # Notifications
    notification_webhook_url: Optional[str] = None

    # Runtime
    environment: str = "development"
    job_backend: str = "postgres"
    worker_concurrency: int = 4

    # Matching
    auto_match_threshold: float = 0.95
    suggested_match_threshold: float = 0.70

    # Scheduling
    sync_interval_hours: int = 6
    sync_window_minutes: int = 60
    no_match_cutoff_days: int = 90
    max_attachment_size: int = 10 * 1024 * 1024
    signed_url_expiry: int = 3600

    @property
    def is_production(self) -> bool:
        """Whether global maintenance jobs (e.g. the no-match sweep) may run."""
        return self.environment in ("production", "staging")

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        Returns:
            Config: Configuration object

        Raises:
            ValueError: If required environment variables are missing
        """
        required_vars = [
            "DATABASE_URL",
            "S3_ENDPOINT",
            "S3_BUCKET",
            "AWS_ACCESS_KEY_ID",
            "AWS_SECRET_ACCESS_KEY",
            "INFERENCE_API_URL",
        ]

        missing = [var for var in required_vars if not os.getenv(var)]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            database_url=os.getenv("DATABASE_URL"),
            s3_endpoint=os.getenv("S3_ENDPOINT"),
            s3_bucket=os.getenv("S3_BUCKET"),
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            inference_api_url=os.getenv("INFERENCE_API_URL"),
            inference_api_key=os.getenv("INFERENCE_API_KEY", "not-needed"),
            extraction_model=os.getenv("EXTRACTION_MODEL", "Qwen/Qwen2.5-VL-7B-Instruct"),
            embedding_api_url=os.getenv("EMBEDDING_API_URL"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            google_oauth2_client_id=os.getenv("GOOGLE_OAUTH2_CLIENT_ID"),
            google_oauth2_client_secret=os.getenv("GOOGLE_OAUTH2_CLIENT_SECRET"),
            slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
            whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            einvoice_api_url=os.getenv("EINVOICE_API_URL"),
            einvoice_api_key=os.getenv("EINVOICE_API_KEY"),
            notification_webhook_url=os.getenv("NOTIFICATION_WEBHOOK_URL"),
            environment=os.getenv("ENVIRONMENT", "development"),
            job_backend=os.getenv("JOB_BACKEND", "postgres"),
            worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "4")),
            auto_match_threshold=float(os.getenv("AUTO_MATCH_THRESHOLD", "0.95")),
            suggested_match_threshold=float(os.getenv("SUGGESTED_MATCH_THRESHOLD", "0.70")),
            sync_interval_hours=int(os.getenv("SYNC_INTERVAL_HOURS", "6")),
            sync_window_minutes=int(os.getenv("SYNC_WINDOW_MINUTES", "60")),
            no_match_cutoff_days=int(os.getenv("NO_MATCH_CUTOFF_DAYS", "90")),
            max_attachment_size=int(os.getenv("MAX_ATTACHMENT_SIZE", str(10 * 1024 * 1024))),
            signed_url_expiry=int(os.getenv("SIGNED_URL_EXPIRY", "3600")),
        )
