"""Update action: write the same column values onto every record."""

from typing import Any, Dict

from actions.base_action import BaseAction
from core.constants import UndoActionType
from core.exceptions import InvalidConfiguration
from services.record_service import RecordService


class UpdateAction(BaseAction):
    """Set columns from `parameters["data"]` (or the flat parameters)."""

    name = "update"
    label = "Update"
    description = "Update fields on the selected records"
    icon = "edit"
    color = "primary"
    supports_undo = True
    undo_type = UndoActionType.UPDATE
    confirmation_required = True

    def validate_parameters(self, parameters: Dict[str, Any], model: type) -> Dict[str, Any]:
        data = parameters.get("data", parameters)
        if not isinstance(data, dict) or not data:
            raise InvalidConfiguration("The update action requires at least one field to set.")

        records = RecordService(None, model)
        unknown = sorted(key for key in data if not records.has_column(key))
        if unknown:
            raise InvalidConfiguration(
                f"Unknown fields for {model.__name__}: {', '.join(unknown)}"
            )
        if records.pk_key in data:
            raise InvalidConfiguration("The primary key cannot be updated.")
        return {"data": dict(data)}

    async def execute(self, record, parameters, context) -> bool:
        await context.records.update(record, parameters["data"])
        return True


UPDATE_ACTION_TYPES = {
    "update": UpdateAction,
}
