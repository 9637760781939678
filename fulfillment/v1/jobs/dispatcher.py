"""
Stage dispatcher: routes a claimed job to the processor registered for its stage.
"""

import inspect
from typing import Any

from fulfillment.config.logging import get_logger
from fulfillment.v1.core.exceptions import UnknownStageError
from fulfillment.v1.core.registries import StageRegistry, stage_registry
from fulfillment.v1.jobs.models import Job
from fulfillment.v1.jobs.schemas import RunContext, StageResult

logger = get_logger(__name__)


def build_run_context(job: Job) -> RunContext:
    """Normalize a job row into the context handed to its stage processor."""
    context: dict[str, Any] = job.context or {}
    return RunContext(
        correlation_id=job.correlation_id,
        trigger_type=job.trigger_type,
        stage=job.stage,
        job_id=job.id,
        attempt=job.attempts,
        originating_event_id=context.get("event_id"),
        originating_event_type=context.get("event_type"),
        merchant_id=context.get("merchant_id"),
        location_id=context.get("location_id"),
    )


class StageDispatcher:
    """Invoke stage processors and normalize what they return."""

    def __init__(self, registry: StageRegistry | None = None):
        self.registry = registry if registry is not None else stage_registry

    async def dispatch(self, job: Job) -> StageResult:
        """
        Run the processor for job.stage.

        Raises:
            UnknownStageError: No processor is registered for the stage
        """
        if not self.registry.has(job.stage):
            raise UnknownStageError(job.stage)

        processor = self.registry.get(job.stage)
        run_context = build_run_context(job)

        job_logger = logger.bind(
            job_id=str(job.id),
            stage=job.stage,
            correlation_id=job.correlation_id,
            attempt=job.attempts,
        )
        job_logger.debug("Dispatching job to stage processor")

        result = processor(job.payload or {}, run_context)
        if inspect.isawaitable(result):
            result = await result
        return self._normalize(result)

    @staticmethod
    def _normalize(result: Any) -> StageResult:
        if isinstance(result, StageResult):
            return result
        if result is None:
            return StageResult.success()
        if isinstance(result, dict):
            return StageResult.success(data=result)
        return StageResult.success(data={"result": result})
