"""
Utility functions for the bulk action engine.

Includes:
- UTC datetime helpers
- JSON-safe value conversion
- Chunking helpers
- Label generation
"""

import inspect
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Optional, Sequence, TypeVar
from uuid import UUID

T = TypeVar("T")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be in UTC, which is how the
    storage layer hands them back on SQLite.

    Args:
        value: Datetime or None

    Returns:
        Aware UTC datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def json_safe(value: Any) -> Any:
    """
    Convert a value into something json.dumps accepts.

    Datetimes and dates become ISO strings, decimals become strings so no
    precision is lost, UUIDs and enums collapse to their plain value.
    Containers are converted recursively.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return json_safe(value.value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)


async def maybe_await(value: Any) -> Any:
    """Await `value` if a sync-or-async callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def batch_count(total: int, size: int) -> int:
    """Number of batches needed to cover `total` items."""
    if total <= 0:
        return 0
    return math.ceil(total / size)


def humanize_label(name: str) -> str:
    """
    Derive a display label from an action name.

    Example:
        "mark_as-read" -> "Mark as read"
    """
    label = name.replace("_", " ").replace("-", " ").strip()
    return label[:1].upper() + label[1:]
