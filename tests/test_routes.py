"""Tests for the cron trigger and admin endpoints."""

from uuid import uuid4

import pytest
from httpx import AsyncClient

CRON_SECRET = "test-cron-secret"


async def succeeding(payload, run_context):
    return {"ok": True}


async def failing(payload, run_context):
    raise RuntimeError("booking API down")


class TestCronEndpoint:
    @pytest.mark.asyncio
    async def test_rejects_missing_secret(self, async_client: AsyncClient):
        response = await async_client.post("/v1/cron/fulfillment-jobs")

        assert response.status_code == 401
        assert response.json()["ok"] is False

    @pytest.mark.asyncio
    async def test_rejects_wrong_secret(self, async_client: AsyncClient):
        response = await async_client.post(
            "/v1/cron/fulfillment-jobs", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            {"Authorization": f"Bearer {CRON_SECRET}"},
            {"Authorization": CRON_SECRET},
            {"x-cron-secret": CRON_SECRET},
        ],
    )
    async def test_accepts_secret_forms(self, async_client: AsyncClient, headers):
        response = await async_client.get(
            "/v1/cron/fulfillment-jobs", headers=headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed"] == 0
        assert data["message"] == "No fulfillment jobs available"

    @pytest.mark.asyncio
    async def test_processes_batch(
        self, async_client: AsyncClient, cron_headers, registry, enqueue
    ):
        registry.register("ingest", succeeding)
        registry.register("booking", failing)
        await enqueue("C1", "ingest")
        await enqueue("C2", "booking")

        response = await async_client.post(
            "/v1/cron/fulfillment-jobs", headers=cron_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed"] == 1
        assert data["errors"] == 1
        assert len(data["jobs"]) == 2
        assert "duration_ms" in data
        failed = [job for job in data["jobs"] if not job["succeeded"]]
        assert failed[0]["stage"] == "booking"
        assert failed[0]["error"] == "booking API down"

    @pytest.mark.asyncio
    async def test_open_without_secret_in_development(
        self, app, async_client: AsyncClient, settings
    ):
        from fulfillment.config.settings import get_settings

        dev_settings = settings.model_copy(
            update={"cron_secret": None, "environment": "development"}
        )
        app.dependency_overrides[get_settings] = lambda: dev_settings

        response = await async_client.post("/v1/cron/fulfillment-jobs")

        assert response.status_code == 200


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_queue_status(self, async_client: AsyncClient, enqueue):
        await enqueue("C1")
        await enqueue("C2")

        response = await async_client.get("/v1/admin/jobs/status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"]["queued"] == 2
        assert data["total"] == 2
        assert len(data["next_queued"]) == 2
        assert data["stuck_jobs"] == []

    @pytest.mark.asyncio
    async def test_admin_key_enforced(
        self, app, async_client: AsyncClient, settings
    ):
        from fulfillment.config.settings import get_settings

        keyed = settings.model_copy(update={"admin_key": "admin-secret"})
        app.dependency_overrides[get_settings] = lambda: keyed

        missing = await async_client.get("/v1/admin/jobs/status")
        allowed = await async_client.get(
            "/v1/admin/jobs/status", headers={"x-admin-key": "admin-secret"}
        )

        assert missing.status_code == 401
        assert allowed.status_code == 200

    @pytest.mark.asyncio
    async def test_requeue_by_correlation_id(
        self, async_client: AsyncClient, enqueue, store
    ):
        job = await enqueue("C1", max_attempts=1)
        claimed = await store.claim_next("w1")
        await store.fail(claimed, "boom")

        response = await async_client.post(
            "/v1/admin/jobs/requeue", json={"correlation_id": "C1"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["requeued_ids"] == [str(job.id)]
        stored = await store.get_job(job.id)
        assert stored.status == "queued"
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_requeue_requires_selector(self, async_client: AsyncClient):
        response = await async_client.post("/v1/admin/jobs/requeue", json={})

        assert response.status_code == 422
        assert response.json()["ok"] is False

    @pytest.mark.asyncio
    async def test_get_run(self, async_client: AsyncClient, enqueue, tracker):
        await enqueue("C1", "ingest")
        await tracker.mark_running("C1", context={"event_id": "evt_1"})

        response = await async_client.get("/v1/admin/runs/C1")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["run"]["correlation_id"] == "C1"
        assert data["run"]["status"] == "running"
        assert data["run"]["context"] == {"event_id": "evt_1"}
        assert [job["stage"] for job in data["jobs"]] == ["ingest"]

    @pytest.mark.asyncio
    async def test_get_run_not_found(self, async_client: AsyncClient):
        response = await async_client.get(f"/v1/admin/runs/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == 404
