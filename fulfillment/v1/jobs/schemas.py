"""
Fulfillment queue Pydantic schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.v1.jobs.models import Stage


class JobCreate(BaseModel):
    """Schema for enqueueing a stage job."""

    correlation_id: str = Field(..., min_length=1, description="Run correlation id")
    stage: Stage | str = Field(..., description="Pipeline stage")
    trigger_type: str = Field(default="unknown", description="Originating event")
    payload: dict[str, Any] = Field(default_factory=dict, description="Stage input")
    context: dict[str, Any] | None = Field(
        default=None, description="Event and tenant metadata"
    )
    scheduled_at: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, description="Attempt ceiling (defaults from settings)"
    )

    @property
    def stage_name(self) -> str:
        return self.stage.value if isinstance(self.stage, Stage) else self.stage


class RunContext(BaseModel):
    """Normalized context handed to a stage processor alongside the payload."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    trigger_type: str
    stage: str
    job_id: UUID
    attempt: int
    originating_event_id: str | None = None
    originating_event_type: str | None = None
    merchant_id: str | None = None
    location_id: str | None = None


class StageOutcome(str, Enum):
    """Classification a stage processor gives its own result."""

    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"


class StageResult(BaseModel):
    """Explicit result of one stage processor invocation."""

    outcome: StageOutcome = StageOutcome.SUCCESS
    error: str | None = None
    data: dict[str, Any] | None = None
    complete_run: bool = Field(
        default=False, description="Mark the whole run completed on success"
    )

    @property
    def ok(self) -> bool:
        return self.outcome == StageOutcome.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.outcome != StageOutcome.FATAL_ERROR

    @classmethod
    def success(
        cls, data: dict[str, Any] | None = None, complete_run: bool = False
    ) -> "StageResult":
        return cls(outcome=StageOutcome.SUCCESS, data=data, complete_run=complete_run)

    @classmethod
    def retryable_error(cls, error: str) -> "StageResult":
        return cls(outcome=StageOutcome.RETRYABLE_ERROR, error=error)

    @classmethod
    def fatal(cls, error: str) -> "StageResult":
        return cls(outcome=StageOutcome.FATAL_ERROR, error=error)


class RunOnceResult(BaseModel):
    """Outcome of a single claim/process cycle."""

    processed: bool
    job_id: UUID | None = None
    stage: str | None = None
    correlation_id: str | None = None


class JobResult(BaseModel):
    """Per-job entry reported by a scheduled invocation."""

    job_id: UUID | None = None
    stage: str | None = None
    correlation_id: str | None = None
    succeeded: bool
    error: str | None = None


class BatchResult(BaseModel):
    """Summary of one scheduled (bounded) invocation."""

    processed_count: int = 0
    error_count: int = 0
    reaped_count: int = 0
    results: list[JobResult] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def message(self) -> str:
        if self.processed_count > 0:
            return f"Processed {self.processed_count} fulfillment job(s)"
        if self.error_count > 0:
            return f"No jobs processed ({self.error_count} error(s))"
        return "No fulfillment jobs available"


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    correlation_id: str
    trigger_type: str
    stage: str
    status: str
    payload: dict[str, Any]
    context: dict[str, Any] | None = None
    attempts: int
    max_attempts: int
    scheduled_at: datetime

    # Worker coordination
    locked_at: datetime | None = None
    lock_owner: str | None = None
    lease_expires_at: datetime | None = None

    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class RunResponse(BaseModel):
    """Schema for run record API responses."""

    model_config = ConfigDict(from_attributes=True)

    correlation_id: str
    trigger_type: str
    event_id: str | None = None
    event_type: str | None = None
    resource_id: str | None = None
    stage: str | None = None
    status: str
    attempts: int
    context: dict[str, Any] | None = None
    resumed_at: datetime | None = None
    last_error: str | None = None
    last_error_stage: str | None = None
    created_at: datetime
    updated_at: datetime


class QueueSummary(BaseModel):
    """Job counts by status."""

    queued: int = 0
    running: int = 0
    completed: int = 0
    error: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.error


class QueueStatusResponse(BaseModel):
    """Operator view of the queue."""

    summary: QueueSummary
    total: int
    stuck_jobs: list[JobResponse]
    next_queued: list[JobResponse]
    recent_completed: list[JobResponse]
    recent_errors: list[JobResponse]


class RequeueRequest(BaseModel):
    """Schema for requeueing terminally failed jobs."""

    job_ids: list[UUID] | None = Field(default=None, description="Job IDs to requeue")
    correlation_id: str | None = Field(
        default=None, description="Requeue every errored job of this run"
    )


class RequeueResponse(BaseModel):
    """Schema for requeue responses."""

    requeued_ids: list[UUID]
