"""Restore action for soft-deleted records."""

from typing import Any, Dict

from actions.base_action import BaseAction
from core.constants import UndoActionType
from core.exceptions import RecordActionFailed
from db.base import is_soft_deletable


class RestoreAction(BaseAction):
    """Un-delete soft-deleted records."""

    name = "restore"
    label = "Restore"
    description = "Restore the selected deleted records"
    icon = "rotate-ccw"
    color = "success"
    supports_undo = True
    undo_type = UndoActionType.DELETE
    confirmation_required = False
    include_deleted = True

    def undo_fields(self, parameters: Dict[str, Any]) -> list[str]:
        return ["is_deleted", "deleted_at"]

    async def execute(self, record, parameters, context) -> bool:
        if not is_soft_deletable(type(record)):
            raise RecordActionFailed(
                context.records.identity(record),
                f"{type(record).__name__} does not support soft delete",
            )
        await context.records.restore(record)
        return True


RESTORE_ACTION_TYPES = {
    "restore": RestoreAction,
}
