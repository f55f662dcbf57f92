"""Match and ingestion notifications.

Notifications are a side channel: a dispatcher failure is logged and never
fails the job that produced it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field

from ..models import MatchAction, MatchSuggestion
from ..storage.database import DatabaseClient
from ..timeouts import TIMEOUTS

logger = logging.getLogger(__name__)


class NotificationType:
    INBOX_AUTO_MATCHED = "inbox_auto_matched"
    INBOX_NEEDS_REVIEW = "inbox_needs_review"
    INBOX_NEW = "inbox_new"


class Notification(BaseModel):
    type: str
    team_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationDispatcher(ABC):
    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver one notification; may raise on delivery failure."""


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log. Used when no webhook is configured."""

    def send(self, notification: Notification) -> None:
        logger.info(f"Notification {notification.type} for team {notification.team_id}: {notification.payload}")


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs notifications as JSON to a webhook."""

    def __init__(self, url: str, timeout: float = TIMEOUTS.external_api):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, notification: Notification) -> None:
        response = self.session.post(self.url, json=notification.model_dump(mode="json"), timeout=self.timeout)
        response.raise_for_status()


def dispatch(dispatcher: NotificationDispatcher, notification: Notification) -> bool:
    """Send a notification, swallowing delivery errors.

    Returns:
        bool: True if the dispatcher accepted it
    """
    try:
        dispatcher.send(notification)
        return True
    except Exception as e:
        logger.warning(f"Failed to send {notification.type} notification for team {notification.team_id}: {e}")
        return False


def notify_match(
    dispatcher: NotificationDispatcher,
    db: DatabaseClient,
    team_id: str,
    action: str,
    suggestion: Optional[MatchSuggestion],
) -> bool:
    """Tell the team about an automatic match or a match awaiting review.

    Args:
        dispatcher: Where to send the notification
        db: Used to load display data for both sides
        team_id: Team that owns the pair
        action: MatchAction of the outcome
        suggestion: The scored pair

    Returns:
        bool: True if a notification was sent
    """
    if suggestion is None or action == MatchAction.NO_MATCH_YET:
        return False

    try:
        inbox = db.get_inbox_by_id(suggestion.inbox_id, team_id)
        transaction = db.get_transaction(suggestion.transaction_id, team_id)
    except Exception as e:
        logger.warning(f"Could not load match details for inbox {suggestion.inbox_id}: {e}")
        return False
    if inbox is None or transaction is None:
        logger.warning(
            f"Skipping notification, inbox {suggestion.inbox_id} or "
            f"transaction {suggestion.transaction_id} no longer exists"
        )
        return False

    notification_type = (
        NotificationType.INBOX_AUTO_MATCHED
        if action == MatchAction.AUTO_MATCHED
        else NotificationType.INBOX_NEEDS_REVIEW
    )
    return dispatch(dispatcher, Notification(
        type=notification_type,
        team_id=team_id,
        payload={
            "inbox_id": inbox.id,
            "transaction_id": transaction.id,
            "document_name": inbox.display_name or inbox.file_name,
            "document_amount": str(inbox.amount) if inbox.amount is not None else None,
            "document_currency": inbox.currency,
            "transaction_name": transaction.name,
            "transaction_amount": str(transaction.amount),
            "transaction_currency": transaction.currency,
            "confidence_score": suggestion.confidence_score,
            "match_type": suggestion.match_type,
            "is_cross_currency": suggestion.is_cross_currency,
        },
    ))


def notify_new_inbox_items(
    dispatcher: NotificationDispatcher,
    team_id: str,
    count: int,
    provider: str,
    account_id: str,
) -> bool:
    if count <= 0:
        return False
    return dispatch(dispatcher, Notification(
        type=NotificationType.INBOX_NEW,
        team_id=team_id,
        payload={"count": count, "provider": provider, "inbox_account_id": account_id},
    ))
