"""Record store adapter used by bulk actions.

Wraps one mapped model and an AsyncSession: soft-delete aware
selection, counting and paging, the mutations built-in actions need,
and JSON-safe snapshots for undo capture and export.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import Select, func, inspect as sa_inspect, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import TypeDecorator

from core.constants import ALL_FIELDS
from core.exceptions import InvalidConfiguration
from core.utils import chunked, json_safe
from db.base import Base, is_soft_deletable

FETCH_CHUNK_SIZE = 500


def model_type_name(model: type) -> str:
    """Dotted `module.ClassName` path stored in model_type columns."""
    return f"{model.__module__}.{model.__qualname__}"


def resolve_model(model_type: str) -> type:
    """Find a mapped class by its dotted path (or bare class name)."""
    fallback = None
    for mapper in Base.registry.mappers:
        cls = mapper.class_
        if model_type_name(cls) == model_type:
            return cls
        if cls.__name__ == model_type:
            fallback = cls
    if fallback is None:
        raise InvalidConfiguration(f"Unknown record type '{model_type}'.")
    return fallback


def coerce_value(column_type, value: Any) -> Any:
    """Turn a JSON value back into the Python type a column expects."""
    if value is None:
        return None
    if isinstance(column_type, TypeDecorator):
        column_type = column_type.impl
    try:
        python_type = column_type.python_type
    except NotImplementedError:
        return value

    if isinstance(value, str):
        if python_type is datetime:
            return datetime.fromisoformat(value)
        if python_type is date:
            return date.fromisoformat(value)
        if python_type is time:
            return time.fromisoformat(value)
        if python_type is uuid.UUID:
            return uuid.UUID(value)
        if python_type is int:
            return int(value)
    if python_type is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    return value


class RecordService:
    """Query and mutate records of one mapped model.

    Usage:
        records = RecordService(session, Contact)
        query = records.build_query(clauses, include_deleted=False)
        total = await records.count(query)
    """

    def __init__(self, session: AsyncSession, model: type):
        mapper = sa_inspect(model, raiseerr=False)
        if mapper is None or not hasattr(mapper, "primary_key"):
            raise InvalidConfiguration(f"'{getattr(model, '__name__', model)}' is not a mapped record type.")
        if len(mapper.primary_key) != 1:
            raise InvalidConfiguration(
                f"'{model.__name__}' must have a single-column primary key for bulk actions."
            )
        self.session = session
        self.model = model
        self.mapper = mapper
        self._pk_column = mapper.primary_key[0]
        self.pk_key = mapper.get_property_by_column(self._pk_column).key
        self._columns = {attr.key: attr.columns[0] for attr in mapper.column_attrs}

    @property
    def pk(self):
        return getattr(self.model, self.pk_key)

    @property
    def soft_deletable(self) -> bool:
        return is_soft_deletable(self.model)

    @property
    def column_names(self) -> list[str]:
        return list(self._columns)

    def has_column(self, name: str) -> bool:
        return name in self._columns

    def column(self, name: str):
        if name not in self._columns:
            raise InvalidConfiguration(f"'{self.model.__name__}' has no column '{name}'.")
        return getattr(self.model, name)

    def identity(self, record: Any) -> Any:
        """Primary key of a loaded record without triggering a refresh."""
        state = sa_inspect(record)
        if state.identity:
            return state.identity[0]
        return getattr(record, self.pk_key)

    def coerce_id(self, value: Any) -> Any:
        return coerce_value(self._pk_column.type, value)

    # ─── Read ──────────────────────────────────────────────

    def build_query(
        self,
        clauses: Iterable[ColumnElement] = (),
        ids: Optional[Sequence[Any]] = None,
        include_deleted: bool = False,
    ) -> Select:
        """Compose a selection ordered by primary key."""
        query = select(self.model)
        if ids is not None:
            query = query.where(self.pk.in_([self.coerce_id(i) for i in ids]))
        for clause in clauses:
            query = query.where(clause)
        if self.soft_deletable and not include_deleted:
            query = query.where(self.model.is_deleted.is_(False))
        return query.order_by(self.pk)

    async def count(self, query: Select) -> int:
        count_query = select(func.count()).select_from(query.order_by(None).subquery())
        result = await self.session.execute(count_query)
        return result.scalar() or 0

    async def pluck_ids(self, query: Select) -> list[Any]:
        """Primary keys matched by `query`, in primary key order."""
        result = await self.session.execute(query.with_only_columns(self.pk))
        return list(result.scalars().all())

    async def fetch(self, ids: Sequence[Any], include_deleted: bool = True) -> list[Any]:
        """Load records by id, preserving the order of `ids` and skipping missing ones."""
        found: dict[Any, Any] = {}
        for chunk in chunked(list(ids), FETCH_CHUNK_SIZE):
            query = self.build_query(ids=chunk, include_deleted=include_deleted)
            result = await self.session.execute(query)
            for record in result.scalars().all():
                found[self.identity(record)] = record
        return [found[key] for key in (self.coerce_id(i) for i in ids) if key in found]

    async def paginate(self, query: Select, offset: int = 0, limit: int = 50) -> list[Any]:
        result = await self.session.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def preview(self, query: Select, limit: int = 100) -> list[dict[str, Any]]:
        """JSON-safe snapshots of the first `limit` matched records."""
        records = await self.paginate(query, 0, limit)
        return [await self.snapshot(record) for record in records]

    async def get_by_id(self, id: Any, include_deleted: bool = False) -> Optional[Any]:
        """Get a single record by primary key."""
        query = self.build_query(ids=[id], include_deleted=include_deleted)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    # ─── Write ─────────────────────────────────────────────

    async def update(self, record: Any, data: dict[str, Any]) -> Any:
        """Write column values onto a record (primary key is never changed)."""
        for key, value in self.coerce(data).items():
            if key != self.pk_key:
                setattr(record, key, value)
        await self.session.flush()
        return record

    async def soft_delete(self, record: Any) -> Any:
        if not self.soft_deletable:
            raise InvalidConfiguration(f"'{self.model.__name__}' does not support soft delete.")
        record.soft_delete()
        await self.session.flush()
        return record

    async def restore(self, record: Any) -> Any:
        if not self.soft_deletable:
            raise InvalidConfiguration(f"'{self.model.__name__}' does not support soft delete.")
        record.restore()
        await self.session.flush()
        return record

    async def hard_delete(self, record: Any) -> None:
        await self.session.delete(record)
        await self.session.flush()

    async def recreate(self, id: Any, data: dict[str, Any]) -> Any:
        """Insert a record again under its original primary key."""
        values = self.coerce(data)
        values[self.pk_key] = self.coerce_id(id)
        instance = self.model(**values)
        self.session.add(instance)
        await self.session.flush()
        return instance

    # ─── Snapshots ─────────────────────────────────────────

    async def snapshot(self, record: Any, fields: Optional[Sequence[str]] = None) -> dict[str, Any]:
        """JSON-safe column values of a record.

        Args:
            record: Loaded instance
            fields: Column names, or ['*'] / None for every column
        """
        if not fields or list(fields) == ALL_FIELDS:
            names = self.column_names
        else:
            names = [name for name in fields if name in self._columns]

        state = sa_inspect(record)
        expired = set(names) & state.expired_attributes
        if expired and state.persistent:
            await self.session.refresh(record, attribute_names=list(expired))

        return {name: json_safe(getattr(record, name)) for name in names}

    def coerce(self, data: dict[str, Any]) -> dict[str, Any]:
        """Keep known columns and convert JSON values to column types."""
        return {
            key: coerce_value(self._columns[key].type, value)
            for key, value in data.items()
            if key in self._columns
        }
