"""
Job store: persistence and atomic claim/complete/fail over fulfillment job rows.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased

from fulfillment.config.settings import Settings
from fulfillment.infra.database import Database, utcnow
from fulfillment.v1.core.exceptions import ValidationError, format_error_message
from fulfillment.v1.jobs.models import Job, JobStatus
from fulfillment.v1.jobs.schemas import (
    JobCreate,
    JobResponse,
    QueueStatusResponse,
    QueueSummary,
)

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired before the job finished"


class JobStore:
    """Service for enqueueing, claiming and settling fulfillment jobs.

    Every operation opens its own short transaction. Claiming is a single
    conditional UPDATE, so concurrent workers coordinate through the database
    alone.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.settings = settings
        self.clock = clock

    def _insert(self):
        if self.database.engine.dialect.name == "postgresql":
            return pg_insert(Job)
        return sqlite_insert(Job)

    async def enqueue(self, job_create: JobCreate) -> Job:
        """
        Enqueue a stage job for a correlation id.

        A job already queued, completed or errored for the same
        (correlation_id, stage) is reset to queued with the new payload. A job
        that is currently running is left alone and returned as-is.
        """
        now = self.clock()
        max_attempts = job_create.max_attempts or self.settings.job_max_attempts
        stmt = self._insert().values(
            id=uuid.uuid4(),
            correlation_id=job_create.correlation_id,
            trigger_type=job_create.trigger_type,
            stage=job_create.stage_name,
            status=JobStatus.QUEUED.value,
            payload=job_create.payload,
            context=job_create.context,
            attempts=0,
            max_attempts=max_attempts,
            scheduled_at=job_create.scheduled_at or now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["correlation_id", "stage"],
            set_={
                "trigger_type": stmt.excluded.trigger_type,
                "status": JobStatus.QUEUED.value,
                "payload": stmt.excluded.payload,
                "context": stmt.excluded.context,
                "attempts": 0,
                "max_attempts": stmt.excluded.max_attempts,
                "scheduled_at": stmt.excluded.scheduled_at,
                "locked_at": None,
                "lock_owner": None,
                "lease_expires_at": None,
                "last_error": None,
                "updated_at": now,
            },
            where=Job.status != JobStatus.RUNNING.value,
        ).returning(Job)

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                stmt, execution_options={"populate_existing": True}
            )
            job = result.scalars().first()
            await session.commit()

            if job is None:
                existing = await session.execute(
                    select(Job).where(
                        Job.correlation_id == job_create.correlation_id,
                        Job.stage == job_create.stage_name,
                    )
                )
                job = existing.scalar_one()
                logger.info(
                    "Job already running, enqueue skipped",
                    extra={"job_id": str(job.id), "stage": job.stage},
                )
                return job

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.id),
                "correlation_id": job.correlation_id,
                "stage": job.stage,
                "scheduled_at": job.scheduled_at.isoformat(),
            },
        )
        return job

    async def claim_next(
        self, worker_id: str, exclude_stages: Iterable[str] = ()
    ) -> Job | None:
        """
        Atomically claim the oldest eligible queued job.

        Eligible rows are queued, due (scheduled_at <= now) and not in one of
        the excluded stages; ties on scheduled_at fall back to created_at.
        Returns None when nothing is eligible.
        """
        now = self.clock()
        stages = [stage for stage in exclude_stages if stage]

        queued = aliased(Job)
        candidate = select(queued.id).where(
            queued.status == JobStatus.QUEUED.value, queued.scheduled_at <= now
        )
        if stages:
            candidate = candidate.where(queued.stage.not_in(stages))
        candidate = (
            candidate.order_by(queued.scheduled_at, queued.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        # The status re-check keeps the transition conditional even where
        # row locks are unavailable.
        stmt = (
            update(Job)
            .where(and_(Job.id == candidate, Job.status == JobStatus.QUEUED.value))
            .values(
                status=JobStatus.RUNNING.value,
                attempts=Job.attempts + 1,
                locked_at=now,
                lock_owner=worker_id,
                lease_expires_at=now + timedelta(seconds=self.settings.job_lease_s),
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self.database.SessionLocal() as session:
            result = await session.execute(stmt)
            job = result.scalars().first()
            await session.commit()

        if job is not None:
            logger.info(
                "Claimed job",
                extra={
                    "worker_id": worker_id,
                    "job_id": str(job.id),
                    "stage": job.stage,
                    "attempts": job.attempts,
                },
            )
        return job

    async def complete(self, job_id: UUID, lock_owner: str | None = None) -> bool:
        """Mark a job completed. Returns False if it was already completed."""
        conditions = [Job.id == job_id, Job.status != JobStatus.COMPLETED.value]
        if lock_owner is not None:
            conditions += [
                Job.status == JobStatus.RUNNING.value,
                Job.lock_owner == lock_owner,
            ]

        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(
                status=JobStatus.COMPLETED.value,
                locked_at=None,
                lock_owner=None,
                lease_expires_at=None,
                last_error=None,
                updated_at=self.clock(),
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        async with self.database.SessionLocal() as session:
            result = await session.execute(stmt)
            updated = result.first() is not None
            await session.commit()

        if not updated:
            logger.info("Job completion was a no-op", extra={"job_id": str(job_id)})
        return updated

    async def fail(
        self,
        job: Job,
        error: BaseException | str | None,
        delay_ms: int | None = None,
        retryable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> Job | None:
        """
        Record a failed attempt and either reschedule or terminate the job.

        Args:
            job: The claimed job (its attempts already include this attempt)
            error: Failure to record as last_error
            delay_ms: Retry delay; defaults to exponential backoff
            retryable: False makes the failure terminal regardless of attempts
            context: Extra keys merged into the job context

        Returns:
            The updated job, or None if this worker no longer owns it
        """
        now = self.clock()
        should_retry = retryable and job.can_retry()
        values: dict[str, Any] = {
            "status": (
                JobStatus.QUEUED.value if should_retry else JobStatus.ERROR.value
            ),
            "locked_at": None,
            "lock_owner": None,
            "lease_expires_at": None,
            "last_error": format_error_message(error),
            "updated_at": now,
        }
        if should_retry:
            if delay_ms is None:
                delay_ms = self.compute_backoff_delay_ms(job.attempts)
            values["scheduled_at"] = now + timedelta(milliseconds=delay_ms)
        if context:
            values["context"] = {**(job.context or {}), **context}

        stmt = (
            update(Job)
            .where(
                Job.id == job.id,
                Job.status == JobStatus.RUNNING.value,
                Job.lock_owner == job.lock_owner,
            )
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self.database.SessionLocal() as session:
            result = await session.execute(stmt)
            updated = result.scalars().first()
            await session.commit()

        if updated is None:
            logger.warning(
                "Job no longer owned, failure not recorded",
                extra={"job_id": str(job.id), "lock_owner": job.lock_owner},
            )
        elif should_retry:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": str(job.id),
                    "attempts": job.attempts,
                    "next_run_at": updated.scheduled_at.isoformat(),
                },
            )
        else:
            logger.error(
                "Job failed terminally",
                extra={"job_id": str(job.id), "attempts": job.attempts},
            )
        return updated

    def compute_backoff_delay_ms(self, attempts: int) -> int:
        """Exponential backoff: base * 2^(attempts-1), capped."""
        exponent = max(0, attempts - 1)
        delay = self.settings.job_backoff_base_ms * (2**exponent)
        return min(delay, self.settings.job_max_backoff_s * 1000)

    async def heartbeat(self, job_id: UUID, lock_owner: str) -> bool:
        """Extend the lease of a job this worker still owns."""
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.RUNNING.value,
                Job.lock_owner == lock_owner,
            )
            .values(
                lease_expires_at=now + timedelta(seconds=self.settings.job_lease_s),
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        async with self.database.SessionLocal() as session:
            result = await session.execute(stmt)
            renewed = result.first() is not None
            await session.commit()
        return renewed

    async def reap_expired_leases(self) -> list[Job]:
        """
        Release running jobs whose lease has expired.

        Jobs with attempts left go back to queued and are immediately due;
        exhausted jobs become terminal errors.
        """
        now = self.clock()
        expired = [
            Job.status == JobStatus.RUNNING.value,
            Job.lease_expires_at <= now,
        ]
        released = {
            "locked_at": None,
            "lock_owner": None,
            "lease_expires_at": None,
            "last_error": LEASE_EXPIRED_ERROR,
            "updated_at": now,
        }

        async with self.database.SessionLocal() as session:
            terminal = await session.execute(
                update(Job)
                .where(*expired, Job.attempts >= Job.max_attempts)
                .values(status=JobStatus.ERROR.value, **released)
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            terminal_jobs = list(terminal.scalars().all())

            requeued = await session.execute(
                update(Job)
                .where(*expired)
                .values(status=JobStatus.QUEUED.value, scheduled_at=now, **released)
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            requeued_jobs = list(requeued.scalars().all())
            await session.commit()

        reaped = terminal_jobs + requeued_jobs
        if reaped:
            logger.warning(
                "Recovered jobs with expired leases",
                extra={
                    "requeued_count": len(requeued_jobs),
                    "terminal_count": len(terminal_jobs),
                    "lease_seconds": self.settings.job_lease_s,
                },
            )
        return reaped

    async def requeue_errored(
        self,
        job_ids: list[UUID] | None = None,
        correlation_id: str | None = None,
        all_errored: bool = False,
    ) -> list[UUID]:
        """Reset terminally failed jobs to queued with a fresh attempt budget."""
        if not job_ids and not correlation_id and not all_errored:
            raise ValidationError(
                "Provide job_ids, correlation_id or all_errored to requeue jobs"
            )

        conditions = [Job.status == JobStatus.ERROR.value]
        if job_ids:
            conditions.append(Job.id.in_(job_ids))
        if correlation_id:
            conditions.append(Job.correlation_id == correlation_id)

        now = self.clock()
        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(
                status=JobStatus.QUEUED.value,
                attempts=0,
                scheduled_at=now,
                locked_at=None,
                lock_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        async with self.database.SessionLocal() as session:
            result = await session.execute(stmt)
            requeued = [row[0] for row in result.all()]
            await session.commit()

        if requeued:
            logger.info(
                "Requeued errored jobs",
                extra={
                    "job_ids": [str(job_id) for job_id in requeued],
                    "correlation_id": correlation_id,
                },
            )
        return requeued

    async def get_job(self, job_id: UUID) -> Job | None:
        """Get job by ID."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            return result.scalar_one_or_none()

    async def list_jobs_for_run(self, correlation_id: str) -> list[Job]:
        """List every job sharing a correlation id, oldest first."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(Job)
                .where(Job.correlation_id == correlation_id)
                .order_by(Job.created_at)
            )
            return list(result.scalars().all())

    async def queue_status(self, sample_size: int = 10) -> QueueStatusResponse:
        """Summarize the queue for operators."""
        now = self.clock()

        async with self.database.SessionLocal() as session:
            status_result = await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
            summary = QueueSummary(**dict(status_result.all()))

            stuck = await session.execute(
                select(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    Job.lease_expires_at <= now,
                )
                .order_by(Job.locked_at)
                .limit(sample_size)
            )
            queued = await session.execute(
                select(Job)
                .where(Job.status == JobStatus.QUEUED.value)
                .order_by(Job.scheduled_at, Job.created_at)
                .limit(sample_size)
            )
            completed = await session.execute(
                select(Job)
                .where(Job.status == JobStatus.COMPLETED.value)
                .order_by(Job.updated_at.desc())
                .limit(sample_size)
            )
            errors = await session.execute(
                select(Job)
                .where(Job.status == JobStatus.ERROR.value)
                .order_by(Job.updated_at.desc())
                .limit(sample_size)
            )

            def to_responses(result) -> list[JobResponse]:
                return [JobResponse.model_validate(job) for job in result.scalars()]

            return QueueStatusResponse(
                summary=summary,
                total=summary.total,
                stuck_jobs=to_responses(stuck),
                next_queued=to_responses(queued),
                recent_completed=to_responses(completed),
                recent_errors=to_responses(errors),
            )
