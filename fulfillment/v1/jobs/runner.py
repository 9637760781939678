"""
Job runner: the shared claim -> dispatch -> complete/fail sequence.

Both execution modes go through JobRunner.execute. The scheduled mode
(run_once / run_batch) handles a bounded number of jobs per invocation; the
continuous mode lives in worker.JobWorker.
"""

import asyncio
import contextlib
import time
from collections.abc import Iterable
from dataclasses import dataclass

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import Settings
from fulfillment.infra.database import Database
from fulfillment.v1.core.exceptions import StageFailedError, format_error_message
from fulfillment.v1.core.registries import StageRegistry
from fulfillment.v1.jobs.dispatcher import StageDispatcher
from fulfillment.v1.jobs.models import Job, JobStatus
from fulfillment.v1.jobs.runs import RunTracker
from fulfillment.v1.jobs.schemas import (
    BatchResult,
    JobResult,
    RunOnceResult,
    StageResult,
)
from fulfillment.v1.jobs.store import LEASE_EXPIRED_ERROR, JobStore

logger = get_logger(__name__)

LEASE_EXPIRED_LABEL = "lease-expired"
LEASE_LOST_ERROR = "Lease lost before the job completed"


@dataclass
class JobExecution:
    """What happened to one claimed job."""

    job: Job
    succeeded: bool
    result: StageResult | None = None
    error: BaseException | None = None
    breaker_opened: bool = False
    terminal: bool = False
    lease_lost: bool = False

    def to_result(self) -> JobResult:
        if self.error is not None:
            error = format_error_message(self.error)
        elif self.lease_lost:
            error = LEASE_LOST_ERROR
        else:
            error = None
        return JobResult(
            job_id=self.job.id,
            stage=self.job.stage,
            correlation_id=self.job.correlation_id,
            succeeded=self.succeeded,
            error=error,
        )


class JobRunner:
    """Processes claimed jobs against the store, run tracker and dispatcher."""

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        tracker: RunTracker,
        dispatcher: StageDispatcher,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.dispatcher = dispatcher

    async def execute(self, job: Job, worker_id: str) -> JobExecution:
        """
        Process one claimed job to completion or failure.

        Stage failures are recorded on the run and the job and returned, never
        raised. Store errors while recording them propagate.
        """
        job_logger = logger.bind(
            job_id=str(job.id),
            stage=job.stage,
            correlation_id=job.correlation_id,
            attempts=job.attempts,
        )
        job_logger.info("Processing job started")

        heartbeat = asyncio.create_task(self._heartbeat_loop(job, worker_id))
        failure: Exception | None = None
        result: StageResult | None = None
        try:
            await self.tracker.mark_running(
                job.correlation_id,
                increment_attempts=True,
                context={
                    **(job.context or {}),
                    "job_id": str(job.id),
                    "worker_id": worker_id,
                },
                trigger_type=job.trigger_type,
                stage=job.stage,
            )
            result = await self.dispatcher.dispatch(job)
            if not result.ok:
                raise StageFailedError(
                    result.error or f"Stage {job.stage} reported a failure",
                    stage=job.stage,
                    retryable=result.retryable,
                )
        except Exception as exc:
            failure = exc
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if failure is not None:
            return await self._record_failure(job, failure)

        if not await self.store.complete(job.id, lock_owner=worker_id):
            # Lease expired mid-run; the row belongs to the reaper or another
            # worker now, so the run record is left to them.
            job_logger.warning(
                "Job lease lost before completion", worker_id=worker_id
            )
            return JobExecution(
                job=job, succeeded=False, result=result, lease_lost=True
            )

        if result is not None and result.complete_run:
            await self.tracker.mark_completed(job.correlation_id, stage=job.stage)
        job_logger.info("Processing job completed successfully")
        return JobExecution(job=job, succeeded=True, result=result)

    async def _record_failure(self, job: Job, error: Exception) -> JobExecution:
        job_logger = logger.bind(
            job_id=str(job.id),
            stage=job.stage,
            correlation_id=job.correlation_id,
            attempts=job.attempts,
        )
        job_logger.error("Job processing failed", error=format_error_message(error))

        await self.tracker.mark_error(job.correlation_id, error, job.stage)

        breaker_opened = job.attempts >= self.settings.breaker_failure_threshold
        retryable = not (isinstance(error, StageFailedError) and not error.retryable)
        updated = await self.store.fail(
            job,
            error,
            delay_ms=(
                self.settings.worker_breaker_cooldown_ms if breaker_opened else None
            ),
            retryable=retryable,
        )
        terminal = updated is not None and updated.status == JobStatus.ERROR.value
        if terminal:
            job_logger.error("Job failed terminally")

        return JobExecution(
            job=job,
            succeeded=False,
            error=error,
            breaker_opened=breaker_opened,
            terminal=terminal,
        )

    async def _heartbeat_loop(self, job: Job, worker_id: str) -> None:
        """Renew the lease of an in-flight job until cancelled."""
        interval = self.settings.job_heartbeat_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.store.heartbeat(job.id, worker_id)
            except Exception:
                logger.exception("Error renewing job lease", job_id=str(job.id))
                continue
            if not renewed:
                logger.warning("Job lease lost", job_id=str(job.id))
                return

    async def run_once(
        self, worker_id: str, exclude_stages: Iterable[str] = ()
    ) -> RunOnceResult:
        """
        Claim and process at most one job.

        A failed job is recorded (run error, retry or terminal) and the
        original failure is then re-raised to the caller.
        """
        execution = await self.process_next(worker_id, exclude_stages)
        if execution is None:
            return RunOnceResult(processed=False)
        if execution.error is not None:
            raise execution.error

        job = execution.job
        return RunOnceResult(
            processed=execution.succeeded,
            job_id=job.id,
            stage=job.stage,
            correlation_id=job.correlation_id,
        )

    async def process_next(
        self, worker_id: str, exclude_stages: Iterable[str] = ()
    ) -> JobExecution | None:
        """Claim the next eligible job and execute it. None when idle."""
        job = await self.store.claim_next(worker_id, exclude_stages)
        if job is None:
            return None
        return await self.execute(job, worker_id)

    async def run_batch(
        self,
        worker_id: str,
        max_jobs: int | None = None,
        error_budget: int | None = None,
    ) -> BatchResult:
        """
        Scheduled invocation: reap expired leases, then run up to max_jobs.

        Stops early when the queue is empty or error_budget failures
        (job failures or store errors) have been seen.
        """
        if max_jobs is None:
            max_jobs = self.settings.jobs_per_invocation
        if error_budget is None:
            error_budget = self.settings.invocation_error_budget
        started = time.monotonic()

        reaped = await self.reap_expired()
        batch = BatchResult(reaped_count=len(reaped))

        for _ in range(max_jobs):
            if batch.error_count >= error_budget:
                logger.warning(
                    "Invocation error budget exhausted",
                    worker_id=worker_id,
                    error_count=batch.error_count,
                )
                break
            try:
                execution = await self.process_next(worker_id)
            except Exception as exc:
                # Store errors count against the budget like job failures.
                batch.error_count += 1
                batch.results.append(
                    JobResult(succeeded=False, error=format_error_message(exc))
                )
                logger.exception("Scheduled job run failed", worker_id=worker_id)
                continue

            if execution is None:
                break
            batch.results.append(execution.to_result())
            if execution.succeeded:
                batch.processed_count += 1
            else:
                batch.error_count += 1

        batch.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Scheduled invocation finished",
            worker_id=worker_id,
            processed=batch.processed_count,
            errors=batch.error_count,
            reaped=batch.reaped_count,
            duration_ms=batch.duration_ms,
        )
        return batch

    async def reap_expired(self) -> list[Job]:
        """Release expired leases and record the failure on each run."""
        reaped = await self.store.reap_expired_leases()
        for job in reaped:
            await self.tracker.mark_error(
                job.correlation_id, LEASE_EXPIRED_ERROR, job.stage, LEASE_EXPIRED_LABEL
            )
        return reaped


def build_runner(
    settings: Settings,
    database: Database,
    registry: StageRegistry | None = None,
) -> JobRunner:
    """Wire a runner over one database with the given stage registry."""
    return JobRunner(
        settings,
        JobStore(database, settings),
        RunTracker(database),
        StageDispatcher(registry),
    )
