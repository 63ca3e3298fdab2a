"""Serializable predicate conditions for record selection.

Conditions are plain data so an execution's selection can be stored in
its `filters` column, replayed by the scheduler and shown in audits.

Example:
    Condition.basic("status", "=", "active").to_dict()
    -> {"type": "basic", "column": "status", "operator": "=", "value": "active"}
"""

import operator as op
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.sql.elements import ColumnElement

from core.constants import ConditionType
from core.exceptions import InvalidConfiguration
from core.utils import json_safe
from services.record_service import coerce_value

OPERATORS: Dict[str, Callable[[Any, Any], ColumnElement]] = {
    "=": op.eq,
    "!=": op.ne,
    "<": op.lt,
    "<=": op.le,
    ">": op.gt,
    ">=": op.ge,
    "like": lambda column, value: column.like(value),
}

OPERATOR_ALIASES = {"==": "=", "<>": "!="}


def normalize_operator(operator: str) -> str:
    normalized = OPERATOR_ALIASES.get(operator.strip().lower(), operator.strip().lower())
    if normalized not in OPERATORS:
        raise InvalidConfiguration(f"Unsupported operator '{operator}'.")
    return normalized


@dataclass
class Condition:
    """One node of a selection predicate."""

    type: ConditionType
    column: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None
    values: Optional[List[Any]] = None
    conditions: List["Condition"] = field(default_factory=list)

    # ─── Constructors ──────────────────────────────────────

    @classmethod
    def basic(cls, column: str, operator: str, value: Any) -> "Condition":
        return cls(ConditionType.BASIC, column=column, operator=normalize_operator(operator), value=value)

    @classmethod
    def in_(cls, column: str, values: List[Any]) -> "Condition":
        return cls(ConditionType.IN, column=column, values=list(values))

    @classmethod
    def not_in(cls, column: str, values: List[Any]) -> "Condition":
        return cls(ConditionType.NOT_IN, column=column, values=list(values))

    @classmethod
    def between(cls, column: str, low: Any, high: Any) -> "Condition":
        return cls(ConditionType.BETWEEN, column=column, values=[low, high])

    @classmethod
    def null(cls, column: str) -> "Condition":
        return cls(ConditionType.NULL, column=column)

    @classmethod
    def not_null(cls, column: str) -> "Condition":
        return cls(ConditionType.NOT_NULL, column=column)

    @classmethod
    def all_of(cls, *conditions: "Condition") -> "Condition":
        if not conditions:
            raise InvalidConfiguration("A compound condition needs at least one member.")
        return cls(ConditionType.AND, conditions=list(conditions))

    # ─── Serialization ─────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.type == ConditionType.AND:
            data["conditions"] = [c.to_dict() for c in self.conditions]
            return data
        data["column"] = self.column
        if self.type == ConditionType.BASIC:
            data["operator"] = self.operator
            data["value"] = json_safe(self.value)
        elif self.values is not None:
            data["values"] = json_safe(self.values)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        try:
            condition_type = ConditionType(data["type"])
        except (KeyError, ValueError) as e:
            raise InvalidConfiguration(f"Invalid condition: {data!r}") from e

        if condition_type == ConditionType.AND:
            return cls.all_of(*(cls.from_dict(c) for c in data.get("conditions", [])))
        if condition_type == ConditionType.BASIC:
            return cls.basic(data["column"], data.get("operator", "="), data.get("value"))
        return cls(condition_type, column=data["column"], values=data.get("values"))

    # ─── Compilation ───────────────────────────────────────

    def to_clause(self, model: type) -> ColumnElement:
        """Compile into a SQLAlchemy clause against `model`."""
        if self.type == ConditionType.AND:
            return and_(*(c.to_clause(model) for c in self.conditions))

        column, column_type = _column(model, self.column)
        coerce = lambda v: coerce_value(column_type, v)  # noqa: E731

        if self.type == ConditionType.BASIC:
            value = self.value if self.operator == "like" else coerce(self.value)
            if value is None and self.operator in ("=", "!="):
                return column.is_(None) if self.operator == "=" else column.is_not(None)
            return OPERATORS[self.operator](column, value)
        if self.type == ConditionType.IN:
            return column.in_([coerce(v) for v in self.values or []])
        if self.type == ConditionType.NOT_IN:
            return column.not_in([coerce(v) for v in self.values or []])
        if self.type == ConditionType.BETWEEN:
            if not self.values or len(self.values) != 2:
                raise InvalidConfiguration(f"between on '{self.column}' needs exactly two values.")
            low, high = self.values
            return column.between(coerce(low), coerce(high))
        if self.type == ConditionType.NULL:
            return column.is_(None)
        if self.type == ConditionType.NOT_NULL:
            return column.is_not(None)
        raise InvalidConfiguration(f"Unsupported condition type '{self.type}'.")


def _column(model: type, name: Optional[str]):
    attrs = model.__mapper__.column_attrs
    if not name or name not in attrs:
        raise InvalidConfiguration(f"{model.__name__} has no column '{name}'.")
    return getattr(model, name), attrs[name].columns[0].type


def compile_conditions(model: type, conditions: List[Condition]) -> List[ColumnElement]:
    return [condition.to_clause(model) for condition in conditions]


def serialize_conditions(conditions: List[Condition]) -> List[Dict[str, Any]]:
    return [condition.to_dict() for condition in conditions]


def deserialize_conditions(data: Optional[List[Dict[str, Any]]]) -> List[Condition]:
    return [Condition.from_dict(item) for item in data or []]
