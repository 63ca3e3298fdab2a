"""Per-batch progress model."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import BatchStatus
from db.base import TimestampedModel, UTCDateTime


class BulkActionProgress(TimestampedModel):
    """One batch of an execution's frozen target set.

    Attributes:
        execution_id: Owning execution
        batch_number: 1-indexed position of the batch
        batch_size: Configured batch size
        total_in_batch: Records actually in this batch
        record_ids: The frozen partition of target ids
        processed_count: Records the handler succeeded on
        failed_count: Records the handler failed on
        status: pending, processing, completed, failed
        affected_ids: Ids successfully processed
        failed_ids: Ids that failed
        error_message: Error that escaped the batch, if any
        error_details: Per-record errors and escape trace
        retry_count: Times the batch was released for redelivery
    """

    __tablename__ = "bulk_action_progress"
    __table_args__ = (
        UniqueConstraint("execution_id", "batch_number", name="uq_bulk_action_progress_batch"),
    )

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("bulk_action_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    batch_number: Mapped[int] = mapped_column()
    batch_size: Mapped[int] = mapped_column()
    total_in_batch: Mapped[int] = mapped_column(default=0)
    record_ids: Mapped[list[Any]] = mapped_column(JSON, default=list)

    processed_count: Mapped[int] = mapped_column(default=0)
    failed_count: Mapped[int] = mapped_column(default=0)
    status: Mapped[str] = mapped_column(default=BatchStatus.PENDING.value, index=True)
    affected_ids: Mapped[list[Any]] = mapped_column(JSON, default=list)
    failed_ids: Mapped[list[Any]] = mapped_column(JSON, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0)

    execution: Mapped["BulkActionExecution"] = relationship(
        "BulkActionExecution", back_populates="progress", lazy="noload"
    )

    @property
    def is_resolved(self) -> bool:
        return self.status not in {s.value for s in BatchStatus.unresolved()}
