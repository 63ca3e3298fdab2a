"""Celery task that runs one bulk action batch unit.

Each unit is processed in its own transaction by the executor. A unit
whose processing raises is released back to pending and retried with
linear backoff; the last attempt marks the batch failed. Delivery is
at-least-once: a redelivered unit whose batch already completed is a
no-op.
"""

import asyncio
import logging

from celery.exceptions import SoftTimeLimitExceeded

from app.config import get_settings
from core.exceptions import ExecutionNotFound, InvalidExecutionState
from db.worker_session import worker_session_factory
from engine.executor import create_executor
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


@celery_app.task(
    name="worker.tasks.bulk.process_bulk_batch",
    bind=True,
    max_retries=settings.BATCH_MAX_RETRIES,
    acks_late=True,
)
def process_bulk_batch(
    self,
    execution_id: str,
    batch_number: int,
    record_ids: list,
    parameters: dict = None,
    capture_undo: bool = False,
):
    """Process one batch of a queued bulk action.

    Args:
        execution_id: Execution the batch belongs to
        batch_number: 1-indexed batch number
        record_ids: Frozen target ids of this batch
        parameters: Validated action parameters
        capture_undo: Whether to capture undo snapshots
    """
    attempt = self.request.retries + 1
    max_attempts = settings.BATCH_MAX_RETRIES + 1
    logger.info(
        f"Processing batch {batch_number} of {execution_id} "
        f"({len(record_ids)} records, attempt {attempt}/{max_attempts})"
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(
            _process(
                execution_id,
                batch_number,
                record_ids,
                parameters or {},
                capture_undo,
                attempt,
                max_attempts,
            )
        )
        logger.info(f"Batch {batch_number} of {execution_id}: {result}")
        return result

    except (ExecutionNotFound, InvalidExecutionState) as exc:
        logger.warning(f"Batch {batch_number} of {execution_id} dropped: {exc}")
        return {"status": "skipped", "reason": str(exc)}

    except Exception as exc:
        if isinstance(exc, SoftTimeLimitExceeded):
            logger.warning(f"Batch {batch_number} of {execution_id} hit the soft time limit")
        else:
            logger.error(f"Batch {batch_number} of {execution_id} failed: {exc}", exc_info=True)

        if attempt < max_attempts:
            raise self.retry(exc=exc, countdown=settings.BATCH_RETRY_BACKOFF_SECONDS * attempt)
        return {"status": "failed", "error": str(exc)}

    finally:
        loop.close()


async def _process(execution_id, batch_number, record_ids, parameters, capture_undo, attempt, max_attempts):
    async with worker_session_factory() as session_factory:
        executor = create_executor(session_factory)
        return await executor.process_batch(
            execution_id,
            batch_number,
            record_ids,
            parameters,
            capture_undo,
            attempt=attempt,
            max_attempts=max_attempts,
        )
