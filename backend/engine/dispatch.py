"""Hand batch units to whatever runs them.

CeleryBatchDispatcher sends each unit to the bulk action queue.
CollectingDispatcher keeps units in memory for tests and for hosts that
drive batches themselves.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import structlog

from app.config import Settings, get_settings
from engine.schemas import BatchUnit

logger = structlog.get_logger(__name__)


class BatchDispatcher(ABC):
    """Sends batch units to a task queue (at-least-once delivery)."""

    @abstractmethod
    async def dispatch(self, units: List[BatchUnit]) -> None:
        ...


class CeleryBatchDispatcher(BatchDispatcher):
    """Dispatch units as `process_bulk_batch` Celery tasks."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def dispatch(self, units: List[BatchUnit]) -> None:
        from worker.tasks.bulk import process_bulk_batch

        for unit in units:
            queue = unit.queue_name or self.settings.BULK_QUEUE_NAME
            process_bulk_batch.apply_async(kwargs=unit.task_kwargs(), queue=queue)
            logger.debug(
                "Batch dispatched",
                execution_id=unit.execution_id,
                batch_number=unit.batch_number,
                queue=queue,
                records=len(unit.record_ids),
            )


class CollectingDispatcher(BatchDispatcher):
    """Keep dispatched units in memory."""

    def __init__(self):
        self.units: List[BatchUnit] = []

    async def dispatch(self, units: List[BatchUnit]) -> None:
        self.units.extend(units)

    def drain(self) -> List[BatchUnit]:
        units, self.units = self.units, []
        return units
