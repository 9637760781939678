"""
Fulfillment job HTTP endpoints.

Provides the scheduled trigger (cron) endpoint and admin endpoints for queue
monitoring and operator remediation.
"""

import hmac
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import Settings, SettingsDep
from fulfillment.infra.database import Database, get_database
from fulfillment.v1.core.exceptions import (
    NotFoundError,
    UnauthorizedError,
    create_success_response,
)
from fulfillment.v1.core.registries import StageRegistry, stage_registry
from fulfillment.v1.jobs.dispatcher import StageDispatcher
from fulfillment.v1.jobs.runner import JobRunner
from fulfillment.v1.jobs.runs import RunTracker
from fulfillment.v1.jobs.schemas import (
    JobResponse,
    RequeueRequest,
    RequeueResponse,
    RunResponse,
)
from fulfillment.v1.jobs.store import JobStore

logger = get_logger(__name__)

CRON_WORKER_ID = "cron"


def get_stage_registry() -> StageRegistry:
    return stage_registry


def get_job_store(
    database: Database = Depends(get_database), settings: Settings = SettingsDep
) -> JobStore:
    return JobStore(database, settings)


def get_run_tracker(database: Database = Depends(get_database)) -> RunTracker:
    return RunTracker(database)


def get_job_runner(
    store: JobStore = Depends(get_job_store),
    tracker: RunTracker = Depends(get_run_tracker),
    registry: StageRegistry = Depends(get_stage_registry),
    settings: Settings = SettingsDep,
) -> JobRunner:
    return JobRunner(settings, store, tracker, StageDispatcher(registry))


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def verify_cron_secret(request: Request, settings: Settings = SettingsDep) -> None:
    """
    Authorize the scheduler.

    Accepts "Authorization: Bearer <secret>", a bare secret in Authorization,
    or an x-cron-secret header. With no secret configured, only development
    allows access.
    """
    expected = settings.cron_secret
    if not expected:
        if settings.environment == "development":
            return
        raise UnauthorizedError("Cron secret is not configured")

    authorization = request.headers.get("authorization", "").strip()
    candidates = [
        authorization,
        authorization.removeprefix("Bearer ").strip(),
        request.headers.get("x-cron-secret"),
    ]
    if not any(_secret_matches(candidate, expected) for candidate in candidates):
        logger.warning("Rejected cron request", path=request.url.path)
        raise UnauthorizedError()


def verify_admin_key(
    x_admin_key: str | None = Header(default=None),
    settings: Settings = SettingsDep,
) -> None:
    """Require x-admin-key when ADMIN_KEY is configured."""
    if settings.admin_key and not _secret_matches(x_admin_key, settings.admin_key):
        raise UnauthorizedError("Invalid admin key")


cron_router = APIRouter(prefix="/cron", tags=["cron"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)]
)


@cron_router.api_route(
    "/fulfillment-jobs",
    methods=["GET", "POST"],
    response_model=dict,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_fulfillment_jobs(
    runner: JobRunner = Depends(get_job_runner),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Process a bounded batch of fulfillment jobs."""
    batch = await runner.run_batch(
        CRON_WORKER_ID,
        max_jobs=settings.jobs_per_invocation,
        error_budget=settings.invocation_error_budget,
    )

    return create_success_response(
        data={
            "processed": batch.processed_count,
            "errors": batch.error_count,
            "reaped": batch.reaped_count,
            "jobs": [result.model_dump(mode="json") for result in batch.results],
            "duration_ms": batch.duration_ms,
            "message": batch.message,
        },
        message=batch.message,
    )


@admin_router.get("/jobs/status", response_model=dict)
async def get_queue_status(
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Queue summary with stuck, queued, completed and errored samples."""
    status = await store.queue_status()
    return create_success_response(data=status.model_dump(mode="json"))


@admin_router.post("/jobs/requeue", response_model=dict)
async def requeue_jobs(
    request: RequeueRequest,
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Requeue terminally failed jobs by ids or by correlation id."""
    requeued = await store.requeue_errored(
        job_ids=request.job_ids, correlation_id=request.correlation_id
    )

    logger.info(
        "Jobs requeued via API",
        requeued_count=len(requeued),
        correlation_id=request.correlation_id,
    )

    response = RequeueResponse(requeued_ids=requeued)
    return create_success_response(
        data=response.model_dump(mode="json"),
        message=f"Requeued {len(requeued)} job(s)",
    )


@admin_router.get("/runs/{correlation_id}", response_model=dict)
async def get_run(
    correlation_id: str,
    store: JobStore = Depends(get_job_store),
    tracker: RunTracker = Depends(get_run_tracker),
) -> dict[str, Any]:
    """Run record for a correlation id, with every job of the run."""
    run = await tracker.get_run(correlation_id)
    if run is None:
        raise NotFoundError(
            f"Run {correlation_id} not found",
            details={"correlation_id": correlation_id},
        )

    jobs = await store.list_jobs_for_run(correlation_id)
    return create_success_response(
        data={
            "run": RunResponse.model_validate(run).model_dump(mode="json"),
            "jobs": [
                JobResponse.model_validate(job).model_dump(mode="json")
                for job in jobs
            ],
        }
    )
