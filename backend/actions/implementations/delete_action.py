"""Delete action.

Soft-deletes records of models using SoftDeleteMixin; hard-deletes
otherwise, or when `force=True`.
"""

from typing import Any, Dict

from actions.base_action import BaseAction
from core.constants import UndoActionType
from db.base import is_soft_deletable


class DeleteAction(BaseAction):
    """Delete records, soft when the model supports it."""

    name = "delete"
    label = "Delete"
    description = "Delete the selected records"
    icon = "trash"
    color = "danger"
    supports_undo = True
    undo_type = UndoActionType.RESTORE
    confirmation_required = True
    confirmation_message = "Are you sure you want to delete the selected records?"

    def validate_parameters(self, parameters: Dict[str, Any], model: type) -> Dict[str, Any]:
        return {"force": bool(parameters.get("force", False))}

    def _is_hard_delete(self, record: Any, parameters: Dict[str, Any]) -> bool:
        return bool(parameters.get("force")) or not is_soft_deletable(type(record))

    def resolve_undo_type(self, record: Any, parameters: Dict[str, Any]) -> UndoActionType:
        if self._is_hard_delete(record, parameters):
            return UndoActionType.RECREATE
        return UndoActionType.RESTORE

    async def execute(self, record, parameters, context) -> bool:
        if self._is_hard_delete(record, parameters):
            await context.records.hard_delete(record)
        else:
            await context.records.soft_delete(record)
        return True


DELETE_ACTION_TYPES = {
    "delete": DeleteAction,
}
