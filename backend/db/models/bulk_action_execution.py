"""Bulk action execution model."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus
from db.base import TimestampedModel, UTCDateTime


class BulkActionExecution(TimestampedModel):
    """One bulk operation instance.

    Attributes:
        id: Unique identifier (UUID string), stable across inline and queued runs
        action_name: Registered action the execution runs
        model_type: Dotted path of the target record class
        filters: Serialized selection ({"ids": [...], "conditions": [...]})
        parameters: Parameters passed to the action handler
        total_records: Target count, fixed when the execution is materialized
        processed_records: Records the handler succeeded on
        failed_records: Records the handler failed on
        status: pending, scheduled, processing, completed, failed, cancelled, partially_completed
        actor_id: Who started the execution (None for system runs)
        started_at: When processing began
        completed_at: When a terminal status was reached
        scheduled_for: UTC time a scheduled execution becomes due
        scheduled_timezone: Timezone the schedule was expressed in
        error_details: Captured error for failed executions
        can_undo: Whether undo snapshots were captured
        undo_expires_at: End of the undo window
        undo_expiry_days: Requested undo window length
        is_dry_run: Preview-only execution; never mutates records
        dry_run_results: Count and preview sample of a dry run
        batch_size: Records per batch
        queued: Whether batches run on the task queue
        queue_name: Task queue the batches were sent to
        callbacks: Which lifecycle callbacks were registered (presence flags only)
        chain_config: Remaining follow-on actions
        parent_execution_id: Execution that started this one as a chained step
    """

    __tablename__ = "bulk_action_executions"
    __table_args__ = (
        Index("ix_bulk_action_executions_status_created", "status", "created_at"),
    )

    action_name: Mapped[str] = mapped_column(index=True)
    model_type: Mapped[str] = mapped_column(index=True)
    filters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    parameters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    total_records: Mapped[int] = mapped_column(default=0)
    processed_records: Mapped[int] = mapped_column(default=0)
    failed_records: Mapped[int] = mapped_column(default=0)

    status: Mapped[str] = mapped_column(default=ExecutionStatus.PENDING.value)
    actor_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    scheduled_timezone: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    can_undo: Mapped[bool] = mapped_column(default=False)
    undo_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    undo_expiry_days: Mapped[Optional[int]] = mapped_column(nullable=True)

    is_dry_run: Mapped[bool] = mapped_column(default=False)
    dry_run_results: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    batch_size: Mapped[int] = mapped_column(default=500)
    queued: Mapped[bool] = mapped_column(default=True)
    queue_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    callbacks: Mapped[Optional[dict[str, bool]]] = mapped_column(JSON, nullable=True)
    chain_config: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    parent_execution_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)

    # Relationships
    progress: Mapped[list["BulkActionProgress"]] = relationship(
        "BulkActionProgress",
        back_populates="execution",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )
    undo_records: Mapped[list["BulkActionUndo"]] = relationship(
        "BulkActionUndo",
        back_populates="execution",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )

    @property
    def progress_percentage(self) -> float:
        if not self.total_records:
            return 0.0
        return round(self.processed_records / self.total_records * 100, 2)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in ExecutionStatus.terminal()}

    @property
    def callback_flags(self) -> dict[str, bool]:
        return dict(self.callbacks or {})

    def __repr__(self) -> str:
        return (
            f"<BulkActionExecution {self.id} action={self.action_name} "
            f"status={self.status} {self.processed_records}/{self.total_records}>"
        )
