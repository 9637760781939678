"""
Run tracker: one durable record per correlation id summarizing a whole
fulfillment pipeline, independent of individual job rows.
"""

import hashlib
import logging
import re
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fulfillment.infra.database import Database, utcnow
from fulfillment.v1.core.exceptions import format_error_message
from fulfillment.v1.jobs.models import FulfillmentRun, RunStatus

logger = logging.getLogger(__name__)

WORKER_ERROR_LABEL = "worker-error"

# Commerce API idempotency keys (orders, payments, gift cards) cap at 45 chars.
MAX_IDEMPOTENCY_KEY_LENGTH = 45

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9:_\-]")


def _safe_part(value: Any, fallback: str = "na") -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    if not text:
        return fallback
    return _UNSAFE_CHARS.sub("-", text)


def _hash_for(parts: list[Any]) -> str:
    raw = "::".join(str(part) for part in parts if part)
    return hashlib.sha256(raw.encode()).hexdigest()


def build_correlation_id(
    trigger_type: str | None, event_id: str | None, resource_id: str | None = None
) -> str:
    """Derive a stable correlation id from the originating event."""
    type_part = _safe_part(trigger_type, "event").lower()
    digest = _hash_for([trigger_type, resource_id, event_id])
    return f"{type_part}:{digest[:24]}"


def build_idempotency_key(parts: list[Any] | str) -> str:
    """
    Build an idempotency key for external calls made by stage processors.

    Keys longer than 45 characters are replaced by a short prefix plus a
    hash so they stay within commerce API limits.
    """
    part_list = parts if isinstance(parts, list) else [parts]
    normalized = [_safe_part(part).lower() for part in part_list if part]
    joined = ":".join(normalized)
    if len(joined) <= MAX_IDEMPOTENCY_KEY_LENGTH:
        return joined

    digest = _hash_for(normalized)
    prefix = (normalized[0] if normalized else "idemp")[:10]
    hash_length = MAX_IDEMPOTENCY_KEY_LENGTH - len(prefix) - 1
    return f"{prefix}:{digest[:hash_length]}"


def build_stage_key(correlation_id: str, stage: str | None, action: str | None) -> str:
    """Idempotency key scoped to one action of one stage of a run."""
    return build_idempotency_key([correlation_id, stage or "stage", action or "op"])


class RunTracker:
    """Service maintaining the aggregate run record for each correlation id."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.clock = clock

    async def ensure_run(
        self,
        correlation_id: str,
        trigger_type: str | None = None,
        event_id: str | None = None,
        event_type: str | None = None,
        resource_id: str | None = None,
        stage: str | None = None,
        status: RunStatus = RunStatus.PENDING,
        context: dict[str, Any] | None = None,
    ) -> FulfillmentRun:
        """Register a run (typically at enqueue time), updating given fields."""

        def apply(run: FulfillmentRun) -> None:
            if trigger_type is not None:
                run.trigger_type = trigger_type
            if event_id is not None:
                run.event_id = event_id
            if event_type is not None:
                run.event_type = event_type
            if resource_id is not None:
                run.resource_id = resource_id
            if stage is not None:
                run.stage = stage
            run.status = status.value
            if context:
                run.context = {**(run.context or {}), **context}

        return await self._upsert(
            correlation_id, apply, trigger_type=trigger_type or "unknown"
        )

    async def mark_running(
        self,
        correlation_id: str,
        increment_attempts: bool = True,
        resumed_at: datetime | None = None,
        context: dict[str, Any] | None = None,
        trigger_type: str | None = None,
        stage: str | None = None,
    ) -> FulfillmentRun:
        """
        Mark the run running, creating it if this is the first reference.

        Context is merged into the existing map; keys written earlier survive
        unless this update sets them again.
        """

        def apply(run: FulfillmentRun) -> None:
            run.status = RunStatus.RUNNING.value
            if increment_attempts:
                run.attempts = (run.attempts or 0) + 1
            run.resumed_at = resumed_at or self.clock()
            if context:
                run.context = {**(run.context or {}), **context}
            if stage is not None:
                run.stage = stage

        return await self._upsert(
            correlation_id, apply, trigger_type=trigger_type or "unknown"
        )

    async def mark_error(
        self,
        correlation_id: str,
        error: BaseException | str | None,
        stage: str,
        label: str = WORKER_ERROR_LABEL,
    ) -> FulfillmentRun:
        """Record a failure, tagging which stage failed and how."""
        stage_label = f"{stage}:{label}"

        def apply(run: FulfillmentRun) -> None:
            run.status = RunStatus.ERROR.value
            run.last_error = format_error_message(error)
            run.last_error_stage = stage_label
            run.stage = stage_label

        run = await self._upsert(correlation_id, apply)
        logger.info(
            "Run marked as error",
            extra={"correlation_id": correlation_id, "stage": stage_label},
        )
        return run

    async def mark_completed(
        self, correlation_id: str, stage: str | None = None
    ) -> FulfillmentRun:
        """Mark the whole run completed."""

        def apply(run: FulfillmentRun) -> None:
            run.status = RunStatus.COMPLETED.value
            if stage is not None:
                run.stage = f"{stage}:completed"

        return await self._upsert(correlation_id, apply)

    async def get_run(self, correlation_id: str) -> FulfillmentRun | None:
        """Get the run record for a correlation id."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(FulfillmentRun).where(
                    FulfillmentRun.correlation_id == correlation_id
                )
            )
            return result.scalar_one_or_none()

    async def _upsert(
        self,
        correlation_id: str,
        apply: Callable[[FulfillmentRun], None],
        trigger_type: str = "unknown",
    ) -> FulfillmentRun:
        # A concurrent first reference can win the insert race; the retry then
        # finds its row and applies the update on top.
        for attempt in range(2):
            try:
                async with self.database.SessionLocal() as session:
                    result = await session.execute(
                        select(FulfillmentRun)
                        .where(FulfillmentRun.correlation_id == correlation_id)
                        .with_for_update()
                    )
                    run = result.scalar_one_or_none()
                    now = self.clock()
                    if run is None:
                        run = FulfillmentRun(
                            correlation_id=correlation_id,
                            trigger_type=trigger_type,
                            status=RunStatus.PENDING.value,
                            attempts=0,
                            created_at=now,
                        )
                        session.add(run)
                    apply(run)
                    run.updated_at = now
                    await session.commit()
                    return run
            except IntegrityError:
                if attempt:
                    raise
                logger.info(
                    "Run created concurrently, retrying update",
                    extra={"correlation_id": correlation_id},
                )
        raise RuntimeError("unreachable")
