"""
Base interface for bulk action handlers.

A handler is either a plain callback `(record, parameters) -> bool` or a
subclass of BaseAction. Subclasses implement execute() and may override
the undo, validation and lifecycle hooks.
"""

import inspect
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from core.constants import ALL_FIELDS, UndoActionType
from core.utils import humanize_label

if TYPE_CHECKING:
    from db.models import BulkActionExecution
    from engine.context import ActionContext


def default_undo_type(action_name: str) -> UndoActionType:
    """Reversal used when a handler does not declare one."""
    return {
        "delete": UndoActionType.RESTORE,
        "force_delete": UndoActionType.RECREATE,
        "restore": UndoActionType.DELETE,
        "create": UndoActionType.DELETE,
    }.get(action_name, UndoActionType.UPDATE)


class BaseAction(ABC):
    """
    Abstract base class for class-based bulk action handlers.

    Subclasses must implement:
    - execute(record, parameters, context) -> bool
    - name (class attribute)
    """

    name: str = ""
    label: str = ""
    description: str = ""
    icon: Optional[str] = None
    color: Optional[str] = None
    supports_undo: bool = False
    undo_type: Optional[UndoActionType] = None
    confirmation_required: bool = True
    confirmation_message: Optional[str] = None
    # Whether the target selection should include soft-deleted records
    include_deleted: bool = False

    @abstractmethod
    async def execute(
        self,
        record: Any,
        parameters: Dict[str, Any],
        context: "ActionContext",
    ) -> bool:
        """
        Apply the action to one record.

        Args:
            record: Loaded record instance
            parameters: Validated action parameters
            context: Batch context (session, record adapter, export buffer)

        Returns:
            True on success. False, or raising, counts the record as failed.
        """

    def validate_parameters(self, parameters: Dict[str, Any], model: type) -> Dict[str, Any]:
        """Check and normalize parameters before an execution is created.

        Raise InvalidConfiguration for unusable parameters.
        """
        return dict(parameters)

    def undo_fields(self, parameters: Dict[str, Any]) -> List[str]:
        """Fields captured before the record is mutated (['*'] for all)."""
        return list(ALL_FIELDS)

    def resolve_undo_type(self, record: Any, parameters: Dict[str, Any]) -> UndoActionType:
        return self.undo_type or default_undo_type(self.name)

    async def after_batch(self, context: "ActionContext") -> None:
        """Called once per batch after its records were processed."""

    async def after_complete(self, execution: "BulkActionExecution", context: "ActionContext") -> None:
        """Called once, by whoever completed the execution."""

    @classmethod
    def get_label(cls) -> str:
        return cls.label or humanize_label(cls.name)

    @classmethod
    def get_metadata(cls) -> Dict[str, Any]:
        return {
            "label": cls.get_label(),
            "description": cls.description,
            "icon": cls.icon,
            "color": cls.color,
            "supports_undo": cls.supports_undo,
            "undo_type": cls.undo_type.value if cls.undo_type else None,
            "confirmation_required": cls.confirmation_required,
            "confirmation_message": cls.confirmation_message,
            "include_deleted": cls.include_deleted,
        }


class CallbackAction(BaseAction):
    """Adapts a plain callback to the BaseAction interface.

    Undo behaviour comes from the registration metadata: `undo_type`
    (default update) and `undo_fields` (default all fields).
    """

    def __init__(self, name: str, callback: Callable[..., Any], metadata: Optional[Dict[str, Any]] = None):
        self.name = name
        self.callback = callback
        self.metadata = metadata or {}
        self.supports_undo = bool(self.metadata.get("supports_undo", False))
        self.include_deleted = bool(self.metadata.get("include_deleted", False))
        undo_type = self.metadata.get("undo_type")
        self.undo_type = UndoActionType(undo_type) if undo_type else UndoActionType.UPDATE

    async def execute(self, record, parameters, context) -> bool:
        result = self.callback(record, parameters)
        if inspect.isawaitable(result):
            result = await result
        return result is not False

    def undo_fields(self, parameters):
        return list(self.metadata.get("undo_fields") or ALL_FIELDS)
