"""Notification dispatch for reconciliation outcomes.

Dispatchers are fire-and-forget. A failing dispatcher is logged and never
affects the reconciliation that triggered it.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

# Topics
TOPIC_EVENT_APPLIED = 'event.applied'
TOPIC_EVENT_ORPHANED = 'event.orphaned'


class NotificationDispatcher(ABC):
    """Delivers an outcome to the address it concerns."""

    @abstractmethod
    async def notify(self, recipient: str, topic: str, payload: Dict[str, Any], success: bool) -> None:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Writes notifications to the log, used when nothing else is configured."""

    async def notify(self, recipient: str, topic: str, payload: Dict[str, Any], success: bool) -> None:
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"Notify {recipient}: {topic} success={success} tx={payload.get('tx_hash')}")


class CompositeDispatcher(NotificationDispatcher):
    """Fans a notification out to several dispatchers."""

    def __init__(self, dispatchers: List[NotificationDispatcher]):
        self.dispatchers = list(dispatchers)

    async def notify(self, recipient: str, topic: str, payload: Dict[str, Any], success: bool) -> None:
        for dispatcher in self.dispatchers:
            await safe_notify(dispatcher, recipient, topic, payload, success)


async def safe_notify(
    dispatcher: Optional[NotificationDispatcher],
    recipient: Optional[str],
    topic: str,
    payload: Dict[str, Any],
    success: bool
) -> bool:
    """Deliver a notification, logging instead of raising on failure.

    Returns:
        True if the dispatcher accepted the notification
    """
    if dispatcher is None or not recipient:
        return False
    try:
        await dispatcher.notify(recipient, topic, payload, success)
        return True
    except Exception as e:
        logger.error(f"Failed to notify {recipient} of {topic}: {e}")
        return False


__all__ = [
    'NotificationDispatcher',
    'LoggingDispatcher',
    'CompositeDispatcher',
    'safe_notify',
    'TOPIC_EVENT_APPLIED',
    'TOPIC_EVENT_ORPHANED',
]
