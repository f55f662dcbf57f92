"""Document to transaction matching."""

from .engine import MatchingEngine
from .notifications import (
    LogNotificationDispatcher,
    Notification,
    NotificationDispatcher,
    NotificationType,
    WebhookNotificationDispatcher,
)
from .orchestration import BatchProcessMatchingProcessor, MatchTransactionsBidirectionalProcessor
from .scoring import MatchThresholds, ScoringWeights, score_pair

__all__ = [
    "MatchingEngine",
    "MatchThresholds",
    "ScoringWeights",
    "score_pair",
    "Notification",
    "NotificationType",
    "NotificationDispatcher",
    "LogNotificationDispatcher",
    "WebhookNotificationDispatcher",
    "BatchProcessMatchingProcessor",
    "MatchTransactionsBidirectionalProcessor",
]
