"""Audit trail model for bulk actions."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import TimestampedModel, UTCDateTime


class BulkActionAudit(TimestampedModel):
    """Audit row kept for every execution, outliving the execution itself.

    Attributes:
        execution_id: Execution the row describes (not a foreign key)
        action_name: Action that ran
        model_type: Target record class
        filters: Selection used
        parameters: Handler parameters
        total_records / processed_records / failed_records: Final counters
        status: Last lifecycle status seen
        actor_id: Who started the execution
        affected_ids: Ids the action touched (bounded by AUDIT_AFFECTED_IDS_LIMIT)
        was_undone: Whether the execution was undone
        undone_by / undone_at: Who undid it and when
        started_at / completed_at: Execution timing
        notes: Free-form notes, e.g. the failure message
    """

    __tablename__ = "bulk_action_audit"

    execution_id: Mapped[str] = mapped_column(unique=True, index=True)
    action_name: Mapped[str] = mapped_column(index=True)
    model_type: Mapped[str] = mapped_column(index=True)
    filters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    parameters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    total_records: Mapped[int] = mapped_column(default=0)
    processed_records: Mapped[int] = mapped_column(default=0)
    failed_records: Mapped[int] = mapped_column(default=0)
    status: Mapped[str] = mapped_column()
    actor_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    affected_ids: Mapped[Optional[list[Any]]] = mapped_column(JSON, nullable=True)

    was_undone: Mapped[bool] = mapped_column(default=False)
    undone_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    undone_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
