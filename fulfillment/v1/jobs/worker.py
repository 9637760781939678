"""
Continuous fulfillment worker with a per-stage circuit breaker.

Features:
- Atomic claim shared with the scheduled runner (JobRunner.execute)
- Per-stage breaker: a stage whose job failed its third attempt is excluded
  from claims for a cooldown window
- Periodic reaping of expired leases
- Graceful shutdown on SIGINT/SIGTERM (the in-flight job finishes first)
"""

import asyncio
import contextlib
import signal
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta

from fulfillment.config.logging import bind_worker_context, get_logger
from fulfillment.config.settings import Settings
from fulfillment.infra.database import Database, utcnow
from fulfillment.v1.core.registries import StageRegistry
from fulfillment.v1.jobs.registry_init import load_stage_processors
from fulfillment.v1.jobs.runner import JobExecution, JobRunner, build_runner

logger = get_logger(__name__)


class StageCircuitBreaker:
    """Process-local map of stage -> time until which it stays excluded."""

    def __init__(
        self, cooldown_ms: int, clock: Callable[[], datetime] = utcnow
    ):
        self.cooldown = timedelta(milliseconds=cooldown_ms)
        self.clock = clock
        self._open_until: dict[str, datetime] = {}

    def open_stages(self) -> list[str]:
        """Stages still cooling down. Elapsed entries are pruned (closed)."""
        now = self.clock()
        for stage, open_until in list(self._open_until.items()):
            if now >= open_until:
                del self._open_until[stage]
                logger.info("Stage circuit closed", stage=stage)
        return list(self._open_until)

    def trip(self, stage: str) -> datetime:
        """Open the breaker for a stage, starting a fresh cooldown."""
        open_until = self.clock() + self.cooldown
        self._open_until[stage] = open_until
        return open_until

    def is_open(self, stage: str) -> bool:
        return stage in self.open_stages()


class JobWorker:
    """Long-running loop that claims and processes jobs until stopped."""

    def __init__(
        self,
        settings: Settings,
        runner: JobRunner,
        database: Database | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.runner = runner
        self.database = database
        self.worker_id = worker_id or settings.worker_id
        self.clock = clock
        self.breaker = StageCircuitBreaker(settings.worker_breaker_cooldown_ms, clock)
        self.poll_interval_s = settings.worker_poll_interval_ms / 1000
        self._stop = asyncio.Event()
        self._last_reap_at: datetime | None = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, signal_name: str | None = None) -> None:
        """Stop claiming new jobs; the loop exits after the current one."""
        if not self._stop.is_set():
            logger.info(
                "Stopping job worker", worker_id=self.worker_id, signal=signal_name
            )
        self._stop.set()

    async def tick(self) -> JobExecution | None:
        """
        One loop iteration: claim with open stages excluded, then process.

        Returns None when nothing was eligible.
        """
        excluded = self.breaker.open_stages()
        execution = await self.runner.process_next(self.worker_id, excluded)
        if execution is not None and execution.breaker_opened:
            open_until = self.breaker.trip(execution.job.stage)
            logger.warning(
                "Stage circuit opened",
                stage=execution.job.stage,
                job_id=str(execution.job.id),
                attempts=execution.job.attempts,
                open_until=open_until.isoformat(),
            )
        return execution

    async def run(self) -> None:
        """Run the worker loop until a stop is requested."""
        bind_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            poll_interval_ms=self.settings.worker_poll_interval_ms,
            breaker_cooldown_ms=self.settings.worker_breaker_cooldown_ms,
        )

        with self._signal_handlers():
            try:
                while not self.stopping:
                    await self._reap_if_due()
                    try:
                        execution = await self.tick()
                    except Exception:
                        logger.exception(
                            "Error in worker loop", worker_id=self.worker_id
                        )
                        await self._idle()
                        continue

                    if execution is None:
                        await self._idle()
            finally:
                if self.database is not None:
                    await self.database.close()
                logger.info("Job worker stopped", worker_id=self.worker_id)

    async def _reap_if_due(self) -> None:
        now = self.clock()
        interval = timedelta(seconds=self.settings.job_reaper_interval_s)
        if self._last_reap_at is not None and now - self._last_reap_at < interval:
            return
        self._last_reap_at = now
        try:
            await self.runner.reap_expired()
        except Exception:
            logger.exception("Error reaping expired leases", worker_id=self.worker_id)

    async def _idle(self) -> None:
        """Sleep one poll interval, waking early on stop."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_s)

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or the platform has no loop signals.
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


async def run_worker(
    settings: Settings, registry: StageRegistry | None = None
) -> None:
    """Build a worker from settings and run it until signalled."""
    registry = load_stage_processors(settings, registry)
    database = Database(settings)
    runner = build_runner(settings, database, registry)
    worker = JobWorker(settings, runner, database=database)
    await worker.run()
