"""Notification channel implementations.

Each channel delivers bulk action lifecycle notifications (started,
completed, failed, cancelled, undone) to one sink. The
NotificationManager fans a notification out to every registered channel.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import LifecycleEvent
from db.models import BulkActionAudit, BulkActionProgress
from engine.schemas import ExecutionSnapshot

logger = logging.getLogger(__name__)
audit_logger = structlog.get_logger("bulk_actions.audit")

TERMINAL_EVENTS = {LifecycleEvent.COMPLETED, LifecycleEvent.FAILED, LifecycleEvent.CANCELLED}


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


def _delivered(channel: str, message: str) -> DeliveryResult:
    return DeliveryResult(
        success=True,
        channel=channel,
        message=message,
        delivered_at=datetime.now(timezone.utc).isoformat(),
    )


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    name: str = "base"

    @abstractmethod
    async def send(
        self,
        event: LifecycleEvent,
        snapshot: ExecutionSnapshot,
        extra: Optional[dict[str, Any]] = None,
    ) -> DeliveryResult:
        """Deliver one lifecycle notification."""
        ...


# ─── Audit Log Channel ─────────────────────────────────────────

class AuditLogChannel(BaseChannel):
    """Structured audit log line plus one bulk_action_audit row per execution."""

    name = "audit_log"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def send(self, event, snapshot, extra=None) -> DeliveryResult:
        extra = extra or {}
        audit_logger.info(
            "bulk_action." + event.value,
            execution_id=snapshot.id,
            action=snapshot.action_name,
            model_type=snapshot.model_type,
            status=snapshot.status,
            actor_id=snapshot.actor_id,
            total=snapshot.total_records,
            processed=snapshot.processed_records,
            failed=snapshot.failed_records,
            **extra,
        )

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(BulkActionAudit).where(BulkActionAudit.execution_id == snapshot.id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = BulkActionAudit(
                        execution_id=snapshot.id,
                        action_name=snapshot.action_name,
                        model_type=snapshot.model_type,
                        filters=snapshot.filters,
                        parameters=snapshot.parameters,
                        actor_id=snapshot.actor_id,
                        status=snapshot.status,
                        was_undone=False,
                    )
                    session.add(row)

                row.status = snapshot.status
                row.total_records = snapshot.total_records
                row.processed_records = snapshot.processed_records
                row.failed_records = snapshot.failed_records
                row.started_at = snapshot.started_at
                row.completed_at = snapshot.completed_at

                if event in TERMINAL_EVENTS and self.settings.AUDIT_LOG_AFFECTED_IDS:
                    row.affected_ids = await self._affected_ids(session, snapshot.id)
                if event == LifecycleEvent.FAILED and snapshot.error_details:
                    row.notes = str(snapshot.error_details.get("message", ""))[:2000]
                if event == LifecycleEvent.UNDONE:
                    row.was_undone = True
                    row.undone_by = extra.get("undone_by")
                    row.undone_at = datetime.now(timezone.utc)

        return _delivered(self.name, f"Audit recorded ({event.value})")

    async def _affected_ids(self, session: AsyncSession, execution_id: str) -> list:
        limit = self.settings.AUDIT_AFFECTED_IDS_LIMIT
        result = await session.execute(
            select(BulkActionProgress.affected_ids)
            .where(BulkActionProgress.execution_id == execution_id)
            .order_by(BulkActionProgress.batch_number)
        )
        ids: list = []
        for batch_ids in result.scalars().all():
            ids.extend(batch_ids or [])
            if len(ids) >= limit:
                break
        return ids[:limit]


# ─── Webhook Channel ───────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """POST lifecycle notifications to an HTTP endpoint.

    Config:
        url: Target URL
        headers: Additional headers
        timeout: Seconds before giving up (default 15)
    """

    name = "webhook"

    def __init__(self, config: dict = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self._transport = transport

    async def send(self, event, snapshot, extra=None) -> DeliveryResult:
        url = self.config.get("url")
        if not url:
            return DeliveryResult(success=False, channel=self.name, error="No webhook URL")

        headers = {
            "Content-Type": "application/json",
            "X-Bulk-Action-Event": event.value,
            **self.config.get("headers", {}),
        }
        payload = {
            "event": event.value,
            "execution": snapshot.model_dump(mode="json"),
            "extra": extra or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.config.get("timeout", 15), transport=self._transport
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook send failed: {e}")
            return DeliveryResult(success=False, channel=self.name, error=str(e))

        return _delivered(self.name, f"Webhook delivered (HTTP {response.status_code})")


# ─── Callback Channel (in-process listeners) ───────────────────

Listener = Callable[[LifecycleEvent, ExecutionSnapshot, dict], Optional[Awaitable[None]]]


class CallbackChannel(BaseChannel):
    """Invoke in-process listeners, sync or async."""

    name = "callback"

    def __init__(self, listeners: Optional[list[Listener]] = None):
        self._listeners: list[Listener] = list(listeners or [])

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def send(self, event, snapshot, extra=None) -> DeliveryResult:
        for listener in self._listeners:
            result = listener(event, snapshot, extra or {})
            if inspect.isawaitable(result):
                await result
        return _delivered(self.name, f"{len(self._listeners)} listeners called")


# ─── Broadcast Channel (real-time progress) ───────────────────

class Publisher(Protocol):
    async def publish(self, channel: str, payload: dict) -> Any:
        ...


class BroadcastChannel(BaseChannel):
    """Push progress snapshots and lifecycle events to a real-time publisher.

    The publisher is anything exposing `async publish(channel, payload)`,
    e.g. a Redis pub/sub wrapper or a WebSocket connection manager.
    """

    name = "broadcast"

    def __init__(self, publisher: Publisher, prefix: str = "bulk-actions"):
        self._publisher = publisher
        self.prefix = prefix

    def channel_for(self, execution_id: str) -> str:
        return f"{self.prefix}.{execution_id}"

    async def publish(self, execution_id: str, payload: dict) -> DeliveryResult:
        try:
            await self._publisher.publish(self.channel_for(execution_id), payload)
        except Exception as e:
            logger.warning(f"Broadcast failed for {execution_id}: {e}")
            return DeliveryResult(success=False, channel=self.name, error=str(e))
        return _delivered(self.name, "Broadcast published")

    async def send(self, event, snapshot, extra=None) -> DeliveryResult:
        payload = {"event": event.value, "execution": snapshot.model_dump(mode="json"), **(extra or {})}
        return await self.publish(snapshot.id, payload)
