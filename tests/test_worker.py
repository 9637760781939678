"""Tests for the continuous worker loop and the per-stage circuit breaker."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from fulfillment.v1.jobs.models import JobStatus
from fulfillment.v1.jobs.worker import JobWorker, StageCircuitBreaker


async def failing_payment(payload, run_context):
    raise RuntimeError("payment provider timeout")


async def succeeding(payload, run_context):
    return None


@pytest.fixture
def worker(settings, runner, clock):
    return JobWorker(settings, runner, worker_id="loop-worker", clock=clock)


class TestStageCircuitBreaker:
    def test_trip_and_close_after_cooldown(self, clock):
        breaker = StageCircuitBreaker(cooldown_ms=60000, clock=clock)

        open_until = breaker.trip("payment")

        assert open_until == clock() + timedelta(seconds=60)
        assert breaker.open_stages() == ["payment"]
        assert breaker.is_open("payment")
        assert not breaker.is_open("booking")

        clock.advance(seconds=59)
        assert breaker.open_stages() == ["payment"]

        clock.advance(seconds=1)
        assert breaker.open_stages() == []
        assert not breaker.is_open("payment")

    def test_retrip_restarts_cooldown(self, clock):
        breaker = StageCircuitBreaker(cooldown_ms=1000, clock=clock)
        breaker.trip("booking")
        clock.advance(milliseconds=900)

        breaker.trip("booking")
        clock.advance(milliseconds=900)

        assert breaker.is_open("booking")


class TestJobWorker:
    @pytest.mark.asyncio
    async def test_tick_idle(self, worker):
        assert await worker.tick() is None

    @pytest.mark.asyncio
    async def test_tick_processes_job(self, worker, registry, enqueue, store):
        registry.register("ingest", succeeding)
        job = await enqueue()

        execution = await worker.tick()

        assert execution.succeeded
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_loop(self, worker, registry, enqueue):
        registry.register("ingest", failing_payment)
        await enqueue()

        execution = await worker.tick()

        assert not execution.succeeded
        assert str(execution.error) == "payment provider timeout"
        assert worker.breaker.open_stages() == []

    @pytest.mark.asyncio
    async def test_breaker_excludes_stage_until_cooldown(
        self, worker, registry, enqueue, store, clock, settings
    ):
        registry.register("payment", failing_payment)
        registry.register("ingest", succeeding)
        failing = await enqueue("C1", "payment", max_attempts=5)

        # Three failures of the same job open the payment breaker
        for attempt in range(1, 4):
            execution = await worker.tick()
            assert execution.job.id == failing.id
            assert execution.job.attempts == attempt
            clock.advance(minutes=10)
        assert execution.breaker_opened
        clock.now -= timedelta(minutes=10)

        assert worker.breaker.open_stages() == ["payment"]

        other_payment = await enqueue("C2", "payment")
        ingest = await enqueue("C3", "ingest")

        # Payment is excluded while open; other stages still flow
        execution = await worker.tick()
        assert execution.job.id == ingest.id
        assert await worker.tick() is None

        clock.advance(milliseconds=settings.worker_breaker_cooldown_ms)

        execution = await worker.tick()
        assert execution.job.stage == "payment"
        assert execution.job.id == other_payment.id
        assert worker.breaker.open_stages() == []

    @pytest.mark.asyncio
    async def test_run_stops_on_request(self, worker, registry, enqueue, store):
        registry.register("ingest", succeeding)
        job = await enqueue()

        loop = asyncio.get_running_loop()
        loop.call_later(0.2, worker.request_stop, "SIGTERM")
        await asyncio.wait_for(worker.run(), timeout=5)

        assert worker.stopping
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_run_reaps_expired_leases(
        self, worker, registry, enqueue, store, clock, settings
    ):
        registry.register("ingest", succeeding)
        job = await enqueue()
        await store.claim_next("crashed-worker")
        clock.advance(seconds=settings.job_lease_s + 1)

        loop = asyncio.get_running_loop()
        loop.call_later(0.2, worker.request_stop)
        await asyncio.wait_for(worker.run(), timeout=5)

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.attempts == 2

    @pytest.mark.asyncio
    async def test_run_closes_database(self, settings, runner, database, clock):
        database.close = AsyncMock(wraps=database.close)
        worker = JobWorker(settings, runner, database=database, clock=clock)
        worker.request_stop()

        await worker.run()

        database.close.assert_awaited_once()
