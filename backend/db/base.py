"""Base model classes for all SQLAlchemy models."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from core.utils import utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite stores datetimes without an offset; values are normalized to
    UTC on the way in and tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    @property
    def python_type(self):
        return datetime

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base model class with common fields for all models."""

    pass


class SoftDeleteMixin:
    """Mixin that adds soft delete capability to any model.

    Adds `deleted_at` and `is_deleted` columns. When an entity is
    "deleted", `deleted_at` is set to the current timestamp and
    `is_deleted` is flipped to True. The row remains in the DB and
    can be restored later.

    Usage in queries:
        # Get only non-deleted records (default for most queries)
        query.where(Model.is_deleted == False)

        # Get including deleted (restore / audit)
        query  # no filter
    """

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, default=None, index=True
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, index=True
    )

    def soft_delete(self) -> None:
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = utcnow()

    def restore(self) -> None:
        """Restore a soft-deleted record."""
        self.is_deleted = False
        self.deleted_at = None


class TimestampedModel(Base):
    """Abstract base with a UUID primary key and automatic timestamps."""

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )


class BaseModel(SoftDeleteMixin, TimestampedModel):
    """Abstract base model with common timestamp fields and soft delete.

    Domain models that bulk actions target usually inherit from this.
    Provides:
    - id: UUID primary key
    - created_at / updated_at: automatic timestamps
    - is_deleted / deleted_at: soft delete support
    """

    __abstract__ = True


def is_soft_deletable(model: type) -> bool:
    return isinstance(model, type) and issubclass(model, SoftDeleteMixin)
