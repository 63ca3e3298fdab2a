"""
Action Registry: maps action names to handlers and their metadata.

A handler is either a plain callback or a BaseAction subclass. Classes
are stored as references and instantiated through the registry's factory
each time the action is resolved, so host applications can inject
dependencies per call. Registering a name again replaces it.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Type, Union

import structlog

from actions.base_action import BaseAction, CallbackAction
from actions.implementations.archive_action import ARCHIVE_ACTION_TYPES
from actions.implementations.delete_action import DELETE_ACTION_TYPES
from actions.implementations.export_action import EXPORT_ACTION_TYPES
from actions.implementations.restore_action import RESTORE_ACTION_TYPES
from actions.implementations.update_action import UPDATE_ACTION_TYPES
from core.constants import UndoActionType
from core.exceptions import InvalidConfiguration, UnknownAction
from core.utils import humanize_label

logger = structlog.get_logger(__name__)

Handler = Union[Callable[..., Any], Type[BaseAction]]
HandlerFactory = Callable[[Type[BaseAction]], BaseAction]

DEFAULT_METADATA: Dict[str, Any] = {
    "supports_undo": False,
    "confirmation_required": True,
}

OVERRIDABLE_ATTRIBUTES = {
    "label",
    "description",
    "icon",
    "supports_undo",
    "undo_type",
    "confirmation_required",
    "confirmation_message",
    "include_deleted",
}


def _default_factory(action_class: Type[BaseAction]) -> BaseAction:
    return action_class()


def _is_action_class(handler: Any) -> bool:
    return inspect.isclass(handler) and issubclass(handler, BaseAction)


def _apply_overrides(action: BaseAction, overrides: Dict[str, Any]) -> None:
    """Let registration metadata override the class attributes of one instance."""
    for key in OVERRIDABLE_ATTRIBUTES.intersection(overrides):
        value = overrides[key]
        if key == "undo_type" and value is not None:
            value = UndoActionType(value)
        setattr(action, key, value)


@dataclass
class ActionDefinition:
    name: str
    handler: Handler
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Explicit registration overrides, applied to each resolved instance
    overrides: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_class(self) -> bool:
        return _is_action_class(self.handler)


class ActionRegistry:
    """Central registry for bulk action handlers."""

    def __init__(self, factory: Optional[HandlerFactory] = None, register_builtins: bool = True):
        self._actions: Dict[str, ActionDefinition] = {}
        self._factory: HandlerFactory = factory or _default_factory
        if register_builtins:
            self._register_builtin_actions()

    def _register_builtin_actions(self):
        """Register the built-in delete, restore, update, archive and export actions."""
        for group in (
            DELETE_ACTION_TYPES,
            RESTORE_ACTION_TYPES,
            UPDATE_ACTION_TYPES,
            ARCHIVE_ACTION_TYPES,
            EXPORT_ACTION_TYPES,
        ):
            for name, action_class in group.items():
                self.register(name, action_class)

    def register(self, name: str, handler: Handler, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Register (or replace) an action.

        Args:
            name: Action name used by builders
            handler: Callback `(record, parameters) -> bool` or BaseAction subclass
            metadata: Optional overrides (label, supports_undo, undo_type, ...)
        """
        if not name:
            raise InvalidConfiguration("Action name must not be empty.")
        if not callable(handler):
            raise InvalidConfiguration(f"Handler for '{name}' must be callable or a BaseAction subclass.")

        merged = dict(DEFAULT_METADATA)
        merged["label"] = humanize_label(name)
        if _is_action_class(handler):
            merged.update({k: v for k, v in handler.get_metadata().items() if v is not None})
            if not handler.label:
                merged["label"] = humanize_label(name)
        merged.update(metadata or {})

        if name in self._actions:
            logger.info("Replacing registered action", action=name)
        self._actions[name] = ActionDefinition(
            name=name, handler=handler, metadata=merged, overrides=dict(metadata or {})
        )

    def register_many(self, actions: Dict[str, Union[Handler, tuple]]) -> None:
        """Register several actions; values are handlers or (handler, metadata) pairs."""
        for name, entry in actions.items():
            if isinstance(entry, tuple):
                handler, metadata = entry
                self.register(name, handler, metadata)
            else:
                self.register(name, entry)

    def unregister(self, name: str) -> None:
        self._actions.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._actions

    def get(self, name: str) -> Handler:
        """Get the raw handler, raising UnknownAction when not registered."""
        return self._definition(name).handler

    def get_metadata(self, name: str) -> Dict[str, Any]:
        return dict(self._definition(name).metadata)

    def resolve(self, name: str) -> BaseAction:
        """Return a ready-to-call action for `name`.

        Class handlers are instantiated through the factory on every call.
        """
        definition = self._definition(name)
        if definition.is_class:
            action = self._factory(definition.handler)
            if not action.name:
                action.name = name
            _apply_overrides(action, definition.overrides)
            return action
        return CallbackAction(name, definition.handler, definition.metadata)

    def set_factory(self, factory: HandlerFactory) -> None:
        self._factory = factory

    def all_with_metadata(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(d.metadata) for name, d in self._actions.items()}

    def undoable_actions(self) -> list[str]:
        return [name for name, d in self._actions.items() if d.metadata.get("supports_undo")]

    @property
    def names(self) -> list[str]:
        return list(self._actions.keys())

    def _definition(self, name: str) -> ActionDefinition:
        definition = self._actions.get(name)
        if definition is None:
            raise UnknownAction(name)
        return definition


# Singleton
_registry: Optional[ActionRegistry] = None


def get_action_registry() -> ActionRegistry:
    """Get or create the singleton action registry."""
    global _registry
    if _registry is None:
        _registry = ActionRegistry()
    return _registry
