"""Database models for the bulk action engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.bulk_action_execution import BulkActionExecution
from db.models.bulk_action_progress import BulkActionProgress
from db.models.bulk_action_undo import BulkActionUndo
from db.models.bulk_action_audit import BulkActionAudit

__all__ = [
    "BulkActionExecution",
    "BulkActionProgress",
    "BulkActionUndo",
    "BulkActionAudit",
]
