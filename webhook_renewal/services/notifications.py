"""Inbound change notification handling."""

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class InvalidNotificationPayload(ValueError):
    """Raised when a notification body has no ``value`` array."""

    pass


@dataclass
class NotificationBatchResult:
    received: int = 0
    accepted: int = 0
    rejected: int = 0
    accepted_notifications: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "rejected": self.rejected,
        }


class NotificationProcessor:
    """
    Validates notifications against the shared clientState secret.

    Notifications with a missing or mismatched clientState are dropped; the
    rest are logged. The comparison is constant-time.
    """

    def __init__(self, client_state_secret: str):
        self._secret = client_state_secret.encode("utf-8")

    def is_valid_client_state(self, client_state: Optional[str]) -> bool:
        if not isinstance(client_state, str):
            return False
        return secrets.compare_digest(client_state.encode("utf-8"), self._secret)

    def process(self, payload: Any) -> NotificationBatchResult:
        notifications = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(notifications, list):
            raise InvalidNotificationPayload("Invalid notification format")

        result = NotificationBatchResult(received=len(notifications))

        for notification in notifications:
            if not isinstance(notification, dict) or not self.is_valid_client_state(
                notification.get("clientState")
            ):
                result.rejected += 1
                logger.warning(
                    "Notification with invalid clientState discarded",
                    subscription_id=notification.get("subscriptionId")
                    if isinstance(notification, dict)
                    else None,
                )
                continue

            result.accepted += 1
            result.accepted_notifications.append(notification)
            logger.info(
                "Change notification received",
                subscription_id=notification.get("subscriptionId"),
                change_type=notification.get("changeType"),
                resource=notification.get("resource"),
            )

        return result
