"""Serializable views of executions, batches and progress."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BatchUnit(BaseModel):
    """One unit of work handed to the task queue."""

    execution_id: str = Field(description="Execution the batch belongs to")
    batch_number: int = Field(ge=1, description="1-indexed batch number")
    record_ids: List[Any] = Field(description="Frozen target ids of this batch")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Validated action parameters")
    capture_undo: bool = Field(default=False, description="Whether to capture undo snapshots")
    queue_name: Optional[str] = Field(default=None, description="Queue the unit is routed to")

    def task_kwargs(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"queue_name"})


class ExecutionSnapshot(BaseModel):
    """Point-in-time view of an execution sent to audit and broadcast sinks."""

    id: str = Field(description="Execution ID")
    action_name: str = Field(description="Action that runs")
    model_type: str = Field(description="Target record type")
    status: str = Field(description="Execution status")
    actor_id: Optional[str] = Field(default=None, description="Who started the execution")
    total_records: int = Field(default=0)
    processed_records: int = Field(default=0)
    failed_records: int = Field(default=0)
    progress_percentage: float = Field(default=0.0)
    filters: Optional[Dict[str, Any]] = Field(default=None)
    parameters: Optional[Dict[str, Any]] = Field(default=None)
    is_dry_run: bool = Field(default=False)
    can_undo: bool = Field(default=False)
    undo_expires_at: Optional[datetime] = Field(default=None)
    scheduled_for: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    error_details: Optional[Dict[str, Any]] = Field(default=None)
    parent_execution_id: Optional[str] = Field(default=None)
    callbacks: Optional[Dict[str, bool]] = Field(default=None)

    class Config:
        from_attributes = True


class ProgressDetails(BaseModel):
    """Aggregate progress of an execution."""

    execution_id: str
    status: str
    percentage: float
    total: int
    processed: int
    failed: int
    batches: Dict[str, int] = Field(default_factory=dict, description="Batch count per status")
    rate_per_second: Optional[float] = Field(default=None, description="Processed records per second")
    estimated_seconds_remaining: Optional[float] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    elapsed_seconds: Optional[float] = Field(default=None)
