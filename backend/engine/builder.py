"""Fluent configuration for one bulk action.

Usage:
    execution = await (
        executor.builder(Contact)
        .action("archive")
        .where("status", "inactive")
        .where_null("archived_at")
        .with_parameters({"reason": "stale"})
        .with_undo(days=14)
        .batch_size(200)
        .as_actor(actor)
        .execute()
    )

Every setter returns the builder. Queueing is the default; dry runs
always run inline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Select
from sqlalchemy.sql.elements import ColumnElement

from core.exceptions import InvalidConfiguration
from core.rbac import Actor
from core.utils import ensure_utc, json_safe, utcnow
from engine.filters import Condition, compile_conditions, serialize_conditions
from services.record_service import RecordService

if TYPE_CHECKING:
    from db.models import BulkActionExecution
    from engine.executor import ActionExecutor

_MISSING = object()

Predicate = Callable[[type], ColumnElement]


def resolve_schedule_time(when: datetime, timezone: str, settings) -> datetime:
    """UTC run time for `when`; naive datetimes are read in `timezone`.

    Raises:
        InvalidConfiguration: Scheduling disabled, unknown timezone, or
            further ahead than MAX_SCHEDULED_DAYS_AHEAD
    """
    if not settings.SCHEDULING_ENABLED:
        raise InvalidConfiguration("Scheduling is disabled.")
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidConfiguration(f"Unknown timezone '{timezone}'.") from e

    if when.tzinfo is None:
        when = when.replace(tzinfo=zone)
    when = ensure_utc(when)

    limit = utcnow() + timedelta(days=settings.MAX_SCHEDULED_DAYS_AHEAD)
    if when > limit:
        raise InvalidConfiguration(
            f"Cannot schedule more than {settings.MAX_SCHEDULED_DAYS_AHEAD} days ahead."
        )
    return when


@dataclass
class BulkActionConfig:
    """Everything the executor needs to run one bulk action."""

    model: Optional[type] = None
    action_name: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)
    predicates: List[Predicate] = field(default_factory=list)
    record_ids: Optional[List[Any]] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    batch_size: int = 500
    queued: bool = True
    queue_name: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    scheduled_timezone: str = "UTC"
    dry_run: bool = False
    undo_enabled: bool = False
    undo_days: int = 7
    authorizer: Optional[Callable[..., Any]] = None
    on_progress: Optional[Callable[..., Any]] = None
    on_complete: Optional[Callable[..., Any]] = None
    on_failure: Optional[Callable[..., Any]] = None
    actor: Optional[Actor] = None
    chain: List[Dict[str, Any]] = field(default_factory=list)
    parent_execution_id: Optional[str] = None
    # Existing execution row to run instead of creating one (scheduled runs)
    execution_id: Optional[str] = None
    # System-originated runs (chained steps, due schedules) skip authorization and rate limits
    trusted: bool = False

    @property
    def actor_id(self) -> Optional[str]:
        return self.actor.id if self.actor else None

    @property
    def has_custom_predicate(self) -> bool:
        return bool(self.predicates)

    def clauses(self) -> List[ColumnElement]:
        clauses = compile_conditions(self.model, self.conditions)
        clauses.extend(predicate(self.model) for predicate in self.predicates)
        return clauses

    def build_query(self, records: RecordService, include_deleted: bool = False) -> Select:
        return records.build_query(self.clauses(), ids=self.record_ids, include_deleted=include_deleted)

    def serializable_filters(self) -> Dict[str, Any]:
        return {
            "ids": json_safe(self.record_ids) if self.record_ids is not None else None,
            "conditions": serialize_conditions(self.conditions),
            "has_custom_predicate": self.has_custom_predicate,
        }

    def callback_flags(self) -> Dict[str, bool]:
        return {
            "has_progress_callback": self.on_progress is not None,
            "has_complete_callback": self.on_complete is not None,
            "has_failure_callback": self.on_failure is not None,
        }


class BulkActionBuilder:
    """Accumulates selection, parameters and run options for one action."""

    def __init__(self, executor: "ActionExecutor", model: Optional[type] = None):
        self._executor = executor
        self._settings = executor.settings
        self._config = BulkActionConfig(
            model=model,
            batch_size=self._settings.DEFAULT_BATCH_SIZE,
            undo_days=self._settings.UNDO_DEFAULT_EXPIRY_DAYS,
        )

    # ─── Target ────────────────────────────────────────────

    def on(self, model: type) -> "BulkActionBuilder":
        self._config.model = model
        return self

    def action(self, name: str) -> "BulkActionBuilder":
        self._config.action_name = name
        return self

    def where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING) -> "BulkActionBuilder":
        """Add a condition.

        where("status", "active")          equality
        where("age", ">=", 18)             comparison
        where(lambda M: M.age > 18)        callable predicate (not serializable)
        """
        if callable(column) and operator is _MISSING:
            self._config.predicates.append(column)
            return self
        if operator is _MISSING:
            raise InvalidConfiguration("where() needs a value.")
        if value is _MISSING:
            operator, value = "=", operator
        self._config.conditions.append(Condition.basic(column, operator, value))
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.in_(column, list(values)))
        return self

    def where_not_in(self, column: str, values: Sequence[Any]) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.not_in(column, list(values)))
        return self

    def where_between(self, column: str, low: Any, high: Any) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.between(column, low, high))
        return self

    def where_null(self, column: str) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.null(column))
        return self

    def where_not_null(self, column: str) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.not_null(column))
        return self

    def where_all(self, *conditions: Condition) -> "BulkActionBuilder":
        self._config.conditions.append(Condition.all_of(*conditions))
        return self

    def ids(self, record_ids: Sequence[Any]) -> "BulkActionBuilder":
        self._config.record_ids = list(record_ids)
        return self

    # ─── Options ───────────────────────────────────────────

    def with_parameters(self, parameters: Dict[str, Any]) -> "BulkActionBuilder":
        self._config.parameters.update(parameters)
        return self

    def batch_size(self, size: int) -> "BulkActionBuilder":
        self._config.batch_size = self._settings.clamp_batch_size(int(size))
        return self

    def sync(self) -> "BulkActionBuilder":
        self._config.queued = False
        return self

    def queue(self, name: Optional[str] = None) -> "BulkActionBuilder":
        self._config.queued = True
        self._config.queue_name = name
        return self

    def schedule_for(self, when: datetime, timezone: str = "UTC") -> "BulkActionBuilder":
        """Run at `when`. Naive datetimes are read in `timezone`; stored as UTC."""
        self._config.scheduled_for = resolve_schedule_time(when, timezone, self._settings)
        self._config.scheduled_timezone = timezone
        return self

    def dry_run(self) -> "BulkActionBuilder":
        self._config.dry_run = True
        return self

    def with_undo(self, days: Optional[int] = None) -> "BulkActionBuilder":
        days = self._settings.UNDO_DEFAULT_EXPIRY_DAYS if days is None else days
        self._config.undo_enabled = True
        self._config.undo_days = self._settings.clamp_undo_days(int(days))
        return self

    def authorize(self, check: Callable[..., Any]) -> "BulkActionBuilder":
        """Custom authorization: check(actor, config) -> bool replaces the policy check."""
        self._config.authorizer = check
        return self

    def on_progress(self, callback: Callable[..., Any]) -> "BulkActionBuilder":
        """callback(percentage, execution), inline runs only."""
        self._config.on_progress = callback
        return self

    def on_complete(self, callback: Callable[..., Any]) -> "BulkActionBuilder":
        """callback(execution), inline runs only."""
        self._config.on_complete = callback
        return self

    def on_failure(self, callback: Callable[..., Any]) -> "BulkActionBuilder":
        """callback(exception, execution), inline runs only."""
        self._config.on_failure = callback
        return self

    def as_actor(self, actor: Optional[Actor]) -> "BulkActionBuilder":
        self._config.actor = actor
        return self

    def chain(self, steps: Sequence[Dict[str, Any]]) -> "BulkActionBuilder":
        """Follow-on actions run over the affected records once this one completes."""
        normalized = []
        for index, step in enumerate(steps, start=1):
            if not step.get("action"):
                raise InvalidConfiguration(f"Chain step {index} has no action.")
            normalized.append({
                "action": step["action"],
                "parameters": dict(step.get("parameters") or {}),
                "step": index,
            })
        self._config.chain = normalized
        return self

    # ─── Introspection ─────────────────────────────────────

    @property
    def config(self) -> BulkActionConfig:
        return self._config

    def build(self) -> BulkActionConfig:
        if self._config.model is None:
            raise InvalidConfiguration("No record type selected; call on(model) first.")
        if not self._config.action_name:
            raise InvalidConfiguration("No action selected; call action(name) first.")
        return self._config

    def serializable_filters(self) -> Dict[str, Any]:
        return self._config.serializable_filters()

    def callback_flags(self) -> Dict[str, bool]:
        return self._config.callback_flags()

    # ─── Terminal operations ───────────────────────────────

    async def count(self) -> int:
        return await self._executor.count(self.build())

    async def preview(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._executor.preview(self.build(), limit)

    async def get_dry_run_details(self) -> Dict[str, Any]:
        return await self._executor.dry_run_details(self.build())

    async def execute(self) -> "BulkActionExecution":
        return await self._executor.execute(self.build())
