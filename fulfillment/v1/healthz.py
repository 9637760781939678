from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import Settings, SettingsDep
from fulfillment.infra.database import get_session
from fulfillment.v1.core.exceptions import create_success_response
from fulfillment.v1.jobs.models import Job, JobStatus

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Fulfillment queue health status."""

    queue_depth: int = 0
    running_jobs: int = 0
    stuck_jobs_count: int = 0
    error_jobs_count: int = 0
    oldest_queued_age_seconds: int | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database connectivity and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session)
        except Exception:
            # Queue stats are informational; connectivity decides overall health
            logger.exception("Queue health check failed")

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession) -> QueueHealth:
    """Count queued, running, stuck and errored jobs."""
    now = datetime.now(UTC)

    counts_result = await session.execute(
        select(Job.status, func.count(Job.id)).group_by(Job.status)
    )
    counts = dict(counts_result.all())

    # Running jobs whose lease lapsed without a heartbeat
    stuck_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.RUNNING.value, Job.lease_expires_at <= now
        )
    )
    stuck_jobs_count = stuck_result.scalar() or 0

    oldest_result = await session.execute(
        select(func.min(Job.scheduled_at)).where(
            Job.status == JobStatus.QUEUED.value, Job.scheduled_at <= now
        )
    )
    oldest_queued = oldest_result.scalar()

    oldest_queued_age_seconds = None
    if oldest_queued:
        oldest_queued_age_seconds = int((now - oldest_queued).total_seconds())

    return QueueHealth(
        queue_depth=counts.get(JobStatus.QUEUED.value, 0),
        running_jobs=counts.get(JobStatus.RUNNING.value, 0),
        stuck_jobs_count=stuck_jobs_count,
        error_jobs_count=counts.get(JobStatus.ERROR.value, 0),
        oldest_queued_age_seconds=oldest_queued_age_seconds,
    )
