"""
Notification collaborator.

Delivery is fire-and-forget: a failing notifier must never block or roll
back a state transition, so callers go through notify_safely().
"""
from typing import Protocol, Dict, Any, Optional
import logging


logger = logging.getLogger(__name__)

# Event names
SUBSCRIPTION_CONFIRMED = "subscription.confirmed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_EXPIRED = "subscription.expired"
RENEWAL_REMINDER = "subscription.renewal_reminder"
LIMIT_WARNING = "usage.limit_warning"
LISTINGS_DISABLED = "downgrade.listings_disabled"


class Notifier(Protocol):
    def send(self, event: str, subscriber_id: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the notification in the log only."""

    def send(self, event: str, subscriber_id: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "[notify] %s",
            event,
            extra={"event_type": event, "subscriber_id": subscriber_id, "payload": payload},
        )


def notify_safely(
    notifier: Optional[Notifier],
    event: str,
    subscriber_id: str,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """Send a notification; log and swallow delivery failures.

    Returns True when the notifier accepted the message.
    """
    if notifier is None:
        return False
    try:
        notifier.send(event, subscriber_id, payload or {})
        return True
    except Exception:
        logger.warning(
            "[notify] delivery failed",
            exc_info=True,
            extra={"event_type": event, "subscriber_id": subscriber_id},
        )
        return False
