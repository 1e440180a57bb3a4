"""Status broadcasting and critical error notifications."""

import itertools
import logging
import os
from typing import Callable, Dict, Optional

import httpx

from shared.models import ImportQueueStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[ImportQueueStatus], None]


class StatusBroadcaster:
    """
    Publish/subscribe channel for import queue snapshots.

    Listeners are kept in a dict keyed by a subscription id, so subscribing
    and unsubscribing are O(1) and unsubscribing twice is harmless.
    """

    def __init__(self):
        self._listeners: Dict[int, StatusListener] = {}
        self._ids = itertools.count(1)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Function that removes the listener; safe to call more than once
        """
        subscription_id = next(self._ids)
        self._listeners[subscription_id] = listener

        def unsubscribe():
            self._listeners.pop(subscription_id, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, snapshot: ImportQueueStatus):
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Status listener failed: {e}", exc_info=True)


class NotificationService:
    """Handles sending notifications for critical sync errors."""

    def __init__(self):
        """Initialize notification service."""
        self.notification_enabled = os.getenv("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.notification_webhook = os.getenv("NOTIFICATION_WEBHOOK_URL")

    async def send_critical_error_notification(
        self,
        entity_type: str,
        error_message: str,
        context: Optional[dict] = None
    ):
        """
        Send notification for a sync that ended in error.

        Logs the notification and, when NOTIFICATION_WEBHOOK_URL is set,
        posts it to the webhook. Delivery failures are logged and never
        affect the sync result.

        Args:
            entity_type: Entity type whose sync failed
            error_message: The user-facing error message
            context: Optional additional context
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping notification for {entity_type} sync")
            return

        notification_message = (
            f"Critical Error in Notion Sync\n"
            f"Entity type: {entity_type}\n"
            f"Error: {error_message}\n"
        )

        if context:
            notification_message += f"Context: {context}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {notification_message}")

        if self.notification_webhook:
            try:
                async with httpx.AsyncClient() as client:
                    await client.post(
                        self.notification_webhook,
                        json={
                            "text": notification_message,
                            "entity_type": entity_type,
                            "error": error_message
                        },
                        timeout=10.0
                    )
                logger.info(f"Notification sent for {entity_type} sync")
            except httpx.HTTPError as e:
                logger.error(f"Failed to send notification: {e}")
