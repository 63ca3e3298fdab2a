"""Per-batch context handed to action handlers.

Holds the session the batch runs in, the record adapter for the target
model, and the export accumulator for the execution. One context is
created per batch; nothing here is shared between executions.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from services.record_service import RecordService

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "export.jsonl"


def export_directory(settings: Settings, execution_id: str) -> Path:
    return Path(settings.EXPORT_DIRECTORY) / execution_id


@dataclass
class ExportBuffer:
    """Rows accumulated by the export action for one batch of one execution."""

    execution_id: str
    batch_number: int = 1
    rows: list[dict[str, Any]] = field(default_factory=list)

    def append(self, row: dict[str, Any]) -> None:
        self.rows.append(row)

    def __len__(self) -> int:
        return len(self.rows)

    def part_path(self, directory: Path) -> Path:
        return directory / f"part-{self.batch_number:06d}.jsonl"

    def flush(self, directory: Path) -> Optional[Path]:
        """Write buffered rows as JSON lines; rewriting a part is idempotent."""
        if not self.rows:
            return None
        directory.mkdir(parents=True, exist_ok=True)
        path = self.part_path(directory)
        with path.open("w", encoding="utf-8") as fh:
            for row in self.rows:
                fh.write(json.dumps(row, default=str))
                fh.write("\n")
        logger.debug(f"Export part written: {path} ({len(self.rows)} rows)")
        self.rows.clear()
        return path


def merge_export_parts(directory: Path) -> Optional[Path]:
    """Concatenate part files in batch order into a single export file."""
    parts = sorted(directory.glob("part-*.jsonl"))
    if not parts:
        return None
    target = directory / EXPORT_FILENAME
    with target.open("w", encoding="utf-8") as out:
        for part in parts:
            out.write(part.read_text(encoding="utf-8"))
    for part in parts:
        part.unlink()
    return target


@dataclass
class ActionContext:
    """What a handler may use while processing records of one batch."""

    session: AsyncSession
    execution_id: str
    model: type
    settings: Settings
    actor_id: Optional[str] = None
    batch_number: Optional[int] = None
    _records: Optional[RecordService] = field(default=None, repr=False)
    _export: Optional[ExportBuffer] = field(default=None, repr=False)

    @property
    def records(self) -> RecordService:
        if self._records is None:
            self._records = RecordService(self.session, self.model)
        return self._records

    def export_buffer(self) -> ExportBuffer:
        if self._export is None:
            self._export = ExportBuffer(self.execution_id, self.batch_number or 1)
        return self._export

    @property
    def has_export(self) -> bool:
        return self._export is not None

    @property
    def export_directory(self) -> Path:
        return export_directory(self.settings, self.execution_id)
