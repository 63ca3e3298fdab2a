"""Permission checks for bulk actions.

An actor may run bulk action `<name>` on a record type when one of its
permission codes matches `<table>.bulk_<name>`.

Wildcards:
    "*"               everything
    "contacts.*"      every bulk action on contacts
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The user (or system principal) starting a bulk action."""

    id: str
    permissions: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def with_permissions(cls, actor_id: str, *permissions: str) -> "Actor":
        return cls(id=actor_id, permissions=frozenset(permissions))


def _check_permission(user_perms: set[str] | frozenset[str], required: str) -> bool:
    """Check if user permissions satisfy the required permission.

    Supports wildcard: "contacts.*" matches "contacts.bulk_delete", etc.
    """
    if required in user_perms:
        return True

    for perm in user_perms:
        if perm == "*":
            return True
        if perm.endswith(".*"):
            prefix = perm[:-2]
            if required.startswith(prefix + "."):
                return True

    return False


def record_type_key(record_type: type) -> str:
    """Permission namespace of a mapped record class (its table name)."""
    return getattr(record_type, "__tablename__", record_type.__name__.lower())


def bulk_permission(record_type: type, action_name: str) -> str:
    return f"{record_type_key(record_type)}.bulk_{action_name}"


class PermissionPolicy:
    """Default authorization predicate: canPerform(actor, recordType, action)."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def can_perform(self, actor: Optional[Actor], record_type: type, action_name: str) -> bool:
        # No actor means a system-initiated run
        if actor is None:
            return True

        required = bulk_permission(record_type, action_name)
        allowed = _check_permission(actor.permissions, required)
        if not allowed:
            logger.warning(f"Permission denied: actor={actor.id} requires={required}")
        return allowed
