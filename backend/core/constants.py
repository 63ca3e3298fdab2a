"""Constants and enums for the bulk action engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Bulk action execution status."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_COMPLETED = "partially_completed"

    @classmethod
    def terminal(cls) -> tuple["ExecutionStatus", ...]:
        return (cls.COMPLETED, cls.FAILED, cls.CANCELLED, cls.PARTIALLY_COMPLETED)

    @classmethod
    def active(cls) -> tuple["ExecutionStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in self.terminal()


class BatchStatus(str, Enum):
    """Status of one batch of an execution."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def unresolved(cls) -> tuple["BatchStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)


class UndoActionType(str, Enum):
    """How a captured record is reversed."""

    RESTORE = "restore"    # record was soft-deleted: un-delete it
    DELETE = "delete"      # record was restored or created: delete it again
    UPDATE = "update"      # record was modified: write original values back
    RECREATE = "recreate"  # record was hard-deleted: insert it again


class LifecycleEvent(str, Enum):
    """Lifecycle notifications sent to audit sinks."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNDONE = "undone"


class ConditionType(str, Enum):
    """Predicate condition kinds supported by the record selection."""

    BASIC = "basic"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    NULL = "null"
    NOT_NULL = "not_null"
    AND = "and"


ALL_FIELDS = ["*"]
