"""Export action: collect records into JSON-lines files.

Rows accumulate in the batch context's export buffer. Each batch writes
its own part file under EXPORT_DIRECTORY/<execution_id>/, and the run
that completes the execution merges the parts into export.jsonl.
"""

from typing import Any, Dict

import structlog

from actions.base_action import BaseAction
from core.constants import ALL_FIELDS
from core.exceptions import InvalidConfiguration
from engine.context import merge_export_parts
from services.record_service import RecordService

logger = structlog.get_logger(__name__)


class ExportAction(BaseAction):
    """Export the selected records without modifying them."""

    name = "export"
    label = "Export"
    description = "Export the selected records to a file"
    icon = "download"
    color = "secondary"
    supports_undo = False
    confirmation_required = False

    def validate_parameters(self, parameters: Dict[str, Any], model: type) -> Dict[str, Any]:
        fields = parameters.get("fields") or list(ALL_FIELDS)
        if fields != ALL_FIELDS:
            records = RecordService(None, model)
            unknown = [f for f in fields if not records.has_column(f)]
            if unknown:
                raise InvalidConfiguration(f"Cannot export unknown fields: {', '.join(unknown)}")
        return {"fields": list(fields)}

    async def execute(self, record, parameters, context) -> bool:
        row = await context.records.snapshot(record, parameters.get("fields"))
        context.export_buffer().append(row)
        return True

    async def after_batch(self, context) -> None:
        if context.has_export:
            context.export_buffer().flush(context.export_directory)

    async def after_complete(self, execution, context) -> None:
        path = merge_export_parts(context.export_directory)
        logger.info(
            "Export file ready",
            execution_id=execution.id,
            path=str(path) if path else None,
            rows=execution.processed_records,
        )


EXPORT_ACTION_TYPES = {
    "export": ExportAction,
}
