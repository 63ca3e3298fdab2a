"""Notification Manager: fans lifecycle notifications out to channels.

Delivery failures are logged and never change the outcome of an
execution.
"""

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import LifecycleEvent
from db.models import BulkActionExecution
from engine.schemas import ExecutionSnapshot
from notifications.channels import (
    AuditLogChannel,
    BaseChannel,
    BroadcastChannel,
    DeliveryResult,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


class NotificationManager:
    """Central dispatcher for bulk action lifecycle notifications."""

    def __init__(self, channels: Optional[list[BaseChannel]] = None):
        self._channels: list[BaseChannel] = []
        for channel in channels or []:
            self.register_channel(channel)

    def register_channel(self, channel: BaseChannel) -> None:
        """Register a notification channel."""
        self._channels.append(channel)
        logger.info(f"Notification channel registered: {channel.name}")

    @property
    def channels(self) -> list[BaseChannel]:
        return list(self._channels)

    async def notify(
        self,
        event: LifecycleEvent,
        execution: BulkActionExecution,
        extra: Optional[dict[str, Any]] = None,
    ) -> list[DeliveryResult]:
        """Send one lifecycle notification to every channel.

        Args:
            event: Lifecycle event
            execution: Execution the event is about
            extra: Event-specific details (error, restored count, ...)

        Returns:
            One DeliveryResult per channel
        """
        snapshot = ExecutionSnapshot.model_validate(execution)
        results = []
        for channel in self._channels:
            try:
                result = await channel.send(event, snapshot, extra)
            except Exception as e:
                logger.exception(f"Notification channel {channel.name} raised on {event.value}")
                result = DeliveryResult(success=False, channel=channel.name, error=str(e))
            if not result.success:
                logger.warning(
                    f"Notification failed via {channel.name} for {execution.id}: {result.error}"
                )
            results.append(result)
        return results


def build_notification_manager(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    broadcaster: Optional[BroadcastChannel] = None,
) -> NotificationManager:
    """Manager with the channels enabled in settings."""
    settings = settings or get_settings()
    manager = NotificationManager()
    if settings.AUDIT_ENABLED:
        manager.register_channel(AuditLogChannel(session_factory, settings))
    if settings.AUDIT_WEBHOOK_URL:
        manager.register_channel(WebhookChannel({"url": settings.AUDIT_WEBHOOK_URL}))
    if broadcaster is not None and settings.BROADCAST_ENABLED:
        manager.register_channel(broadcaster)
    return manager
