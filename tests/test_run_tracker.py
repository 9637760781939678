"""Tests for the run tracker and correlation/idempotency key helpers."""

import pytest

from fulfillment.v1.jobs.models import RunStatus
from fulfillment.v1.jobs.runs import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    build_correlation_id,
    build_idempotency_key,
    build_stage_key,
)


class TestRunTracker:
    @pytest.mark.asyncio
    async def test_mark_running_creates_run(self, tracker, clock):
        run = await tracker.mark_running(
            "C1", trigger_type="customer.created", stage="ingest"
        )

        assert run.correlation_id == "C1"
        assert run.status == RunStatus.RUNNING.value
        assert run.attempts == 1
        assert run.trigger_type == "customer.created"
        assert run.stage == "ingest"
        assert run.resumed_at == clock()

    @pytest.mark.asyncio
    async def test_context_merge_is_additive(self, tracker):
        await tracker.mark_running("C1", context={"a": 1})
        run = await tracker.mark_running("C1", context={"b": 2})

        assert run.context == {"a": 1, "b": 2}
        assert run.attempts == 2

    @pytest.mark.asyncio
    async def test_context_keys_can_be_overwritten(self, tracker):
        await tracker.mark_running("C1", context={"a": 1, "b": 1})
        run = await tracker.mark_running("C1", context={"b": 2})

        assert run.context == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_mark_running_without_increment(self, tracker):
        await tracker.mark_running("C1")
        run = await tracker.mark_running("C1", increment_attempts=False)

        assert run.attempts == 1

    @pytest.mark.asyncio
    async def test_mark_error_labels_stage(self, tracker):
        await tracker.mark_running("C1", stage="ingest")

        run = await tracker.mark_error("C1", RuntimeError("square timeout"), "ingest")

        assert run.status == RunStatus.ERROR.value
        assert run.last_error == "square timeout"
        assert run.last_error_stage == "ingest:worker-error"

    @pytest.mark.asyncio
    async def test_mark_error_custom_label(self, tracker):
        run = await tracker.mark_error("C1", "gone", "payment", label="lease-expired")

        assert run.last_error_stage == "payment:lease-expired"

    @pytest.mark.asyncio
    async def test_later_claim_remarks_running(self, tracker):
        await tracker.mark_running("C1")
        await tracker.mark_error("C1", "boom", "ingest")

        run = await tracker.mark_running("C1")

        assert run.status == RunStatus.RUNNING.value
        assert run.last_error == "boom"

    @pytest.mark.asyncio
    async def test_ensure_run_and_complete(self, tracker):
        run = await tracker.ensure_run(
            "C1",
            trigger_type="booking.created",
            event_id="evt_1",
            event_type="booking.created",
            resource_id="bk_1",
        )
        assert run.status == RunStatus.PENDING.value
        assert run.attempts == 0

        await tracker.mark_running("C1")
        run = await tracker.mark_completed("C1", stage="payment-save")

        assert run.status == RunStatus.COMPLETED.value
        assert run.stage == "payment-save:completed"
        assert run.event_id == "evt_1"

    @pytest.mark.asyncio
    async def test_ensure_run_keeps_existing_trigger_type(self, tracker):
        await tracker.mark_running("C1", trigger_type="customer.created")

        run = await tracker.ensure_run("C1", stage="booking")

        assert run.trigger_type == "customer.created"
        assert run.stage == "booking"

    @pytest.mark.asyncio
    async def test_ensure_run_defaults_trigger_type_on_insert(self, tracker):
        run = await tracker.ensure_run("C1")

        assert run.trigger_type == "unknown"

    @pytest.mark.asyncio
    async def test_get_run_missing(self, tracker):
        assert await tracker.get_run("nope") is None


class TestKeyHelpers:
    def test_correlation_id_is_stable(self):
        first = build_correlation_id("customer", "evt_1", "cus_1")
        second = build_correlation_id("customer", "evt_1", "cus_1")

        assert first == second
        assert first.startswith("customer:")
        assert len(first) == len("customer:") + 24

    def test_correlation_id_differs_per_event(self):
        assert build_correlation_id("customer", "evt_1") != build_correlation_id(
            "customer", "evt_2"
        )

    def test_correlation_id_sanitizes_type(self):
        assert build_correlation_id("booking.created", "evt_1").startswith(
            "booking-created:"
        )

    def test_short_idempotency_key_is_readable(self):
        assert build_idempotency_key(["GiftCard", "C1", "issue"]) == "giftcard:c1:issue"

    def test_long_idempotency_key_is_hashed(self):
        key = build_idempotency_key(["giftcard", "x" * 60, "issue"])

        assert len(key) <= MAX_IDEMPOTENCY_KEY_LENGTH
        assert key.startswith("giftcard:")
        assert key == build_idempotency_key(["giftcard", "x" * 60, "issue"])

    def test_stage_key_scopes_action(self):
        assert build_stage_key("C1", "payment", "charge") != build_stage_key(
            "C1", "payment", "refund"
        )
