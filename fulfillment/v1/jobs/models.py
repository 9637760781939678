"""
Fulfillment queue models: job rows and the per-correlation run record.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.infra.database import Base, UTCDateTime


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Stage(str, Enum):
    """Pipeline stages, in the order a fulfillment run normally visits them."""

    INGEST = "ingest"
    BOOKING = "booking"
    PAYMENT = "payment"
    PAYMENT_SAVE = "payment-save"


class RunStatus(str, Enum):
    """Run status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Job(Base):
    """
    One attempt-tracked unit of work for one pipeline stage.

    A running row always carries lock ownership (locked_at, lock_owner and
    lease_expires_at); every other status has all three cleared.
    """

    __tablename__ = "fulfillment_jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    correlation_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Groups all jobs of one fulfillment run"
    )
    trigger_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="unknown", comment="Originating event category"
    )
    stage: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Pipeline stage that processes this job"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Opaque stage processor input",
    )
    context: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Event and tenant metadata"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|running|completed|error",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of attempts made"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Attempt ceiling"
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        comment="Earliest time the job can be claimed",
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When job was claimed"
    )
    lock_owner: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that claimed the job"
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Claim is considered abandoned after this"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint(
            "correlation_id", "stage", name="uq_fulfillment_jobs_correlation_stage"
        ),
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'error')",
            name="fulfillment_jobs_status_check",
        ),
        CheckConstraint(
            "(status = 'running') = (locked_at IS NOT NULL AND lock_owner IS NOT NULL "
            "AND lease_expires_at IS NOT NULL)",
            name="fulfillment_jobs_lock_fields_check",
        ),
        Index("ix_fulfillment_jobs_claim", "status", "scheduled_at", "created_at"),
        Index("ix_fulfillment_jobs_lease", "status", "lease_expires_at"),
    )

    def can_retry(self) -> bool:
        """Check whether a failure of the current attempt may be retried."""
        return self.attempts < self.max_attempts


class FulfillmentRun(Base):
    """
    Aggregate record of one end-to-end fulfillment run.

    Survives job-row cleanup and summarizes attempts and failures across all
    stages sharing a correlation id.
    """

    __tablename__ = "fulfillment_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    correlation_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    trigger_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="unknown"
    )
    event_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Originating external event id"
    )
    event_type: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Originating external event type"
    )
    resource_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Latest stage label"
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=RunStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Cumulative attempts across jobs"
    )
    context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_stage: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'error')",
            name="fulfillment_runs_status_check",
        ),
        Index("ix_fulfillment_runs_status_updated", "status", "updated_at"),
    )
