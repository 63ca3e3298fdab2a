"""Undo snapshot model."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import TimestampedModel, UTCDateTime


class BulkActionUndo(TimestampedModel):
    """Pre-mutation snapshot of one record touched by an execution.

    Attributes:
        execution_id: Execution that captured the snapshot
        model_type: Dotted path of the record class
        model_id: Primary key of the record (stored as string)
        original_data: Captured field values before the handler ran
        changes: {field: {"old": ..., "new": ...}} diff recorded after the handler ran
        undo_action_type: restore, delete, update or recreate
        undone: Set once the record has been reversed; never cleared
        undone_at: When the reversal happened
        undone_by: Actor that requested the reversal
    """

    __tablename__ = "bulk_action_undo"
    __table_args__ = (
        UniqueConstraint(
            "execution_id", "model_type", "model_id", name="uq_bulk_action_undo_record"
        ),
        Index("ix_bulk_action_undo_model", "model_type", "model_id"),
    )

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("bulk_action_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    model_type: Mapped[str] = mapped_column()
    model_id: Mapped[str] = mapped_column()
    original_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    changes: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    undo_action_type: Mapped[str] = mapped_column()

    undone: Mapped[bool] = mapped_column(default=False, index=True)
    undone_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    undone_by: Mapped[Optional[str]] = mapped_column(nullable=True)

    execution: Mapped["BulkActionExecution"] = relationship(
        "BulkActionExecution", back_populates="undo_records", lazy="noload"
    )
