"""Archive action: stamp an archive timestamp (and optional reason)."""

from typing import Any, Dict

from actions.base_action import BaseAction
from core.constants import UndoActionType
from core.exceptions import InvalidConfiguration
from core.utils import utcnow
from services.record_service import RecordService

DEFAULT_ARCHIVE_COLUMN = "archived_at"
DEFAULT_REASON_COLUMN = "archive_reason"


class ArchiveAction(BaseAction):
    """Mark records as archived.

    Parameters:
        archive_column: Timestamp column to set (default archived_at)
        reason_column: Column for the reason (default archive_reason)
        reason: Optional reason, written only when the column exists
    """

    name = "archive"
    label = "Archive"
    description = "Archive the selected records"
    icon = "archive"
    color = "warning"
    supports_undo = True
    undo_type = UndoActionType.UPDATE
    confirmation_required = True

    def validate_parameters(self, parameters: Dict[str, Any], model: type) -> Dict[str, Any]:
        archive_column = parameters.get("archive_column", DEFAULT_ARCHIVE_COLUMN)
        reason_column = parameters.get("reason_column", DEFAULT_REASON_COLUMN)
        records = RecordService(None, model)
        if not records.has_column(archive_column):
            raise InvalidConfiguration(
                f"{model.__name__} has no archive column '{archive_column}'."
            )
        return {
            "archive_column": archive_column,
            "reason_column": reason_column if records.has_column(reason_column) else None,
            "reason": parameters.get("reason", parameters.get("archive_reason")),
        }

    def undo_fields(self, parameters: Dict[str, Any]) -> list[str]:
        fields = [parameters.get("archive_column", DEFAULT_ARCHIVE_COLUMN)]
        if parameters.get("reason_column"):
            fields.append(parameters["reason_column"])
        return fields

    async def execute(self, record, parameters, context) -> bool:
        data: Dict[str, Any] = {parameters["archive_column"]: utcnow()}
        if parameters.get("reason") and parameters.get("reason_column"):
            data[parameters["reason_column"]] = parameters["reason"]
        await context.records.update(record, data)
        return True


ARCHIVE_ACTION_TYPES = {
    "archive": ArchiveAction,
}
