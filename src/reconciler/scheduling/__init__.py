"""Recurring work: mailbox sync dispatch and the no-match sweep."""

from .dispatch import (
    InitialSetupProcessor,
    SyncAccountsSchedulerProcessor,
    account_cron_pattern,
    schedule_key,
    spread_delays,
)
from .sweep import SWEEP_CRON, SWEEP_SCHEDULE_KEY, NoMatchSchedulerProcessor
from .sync import SyncSchedulerProcessor, gmail_provider_factory

__all__ = [
    "InitialSetupProcessor",
    "SyncAccountsSchedulerProcessor",
    "SyncSchedulerProcessor",
    "NoMatchSchedulerProcessor",
    "account_cron_pattern",
    "schedule_key",
    "spread_delays",
    "gmail_provider_factory",
    "SWEEP_CRON",
    "SWEEP_SCHEDULE_KEY",
]
