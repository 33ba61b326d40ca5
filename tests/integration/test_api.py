"""API endpoint tests."""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.integration


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestPipelineEndpoints:
    """Tests for pipeline control endpoints."""

    async def test_start_queues_run(self, client: AsyncClient, dispatched) -> None:
        response = await client.post("/api/v1/pipelines/github_sync/start")

        assert response.status_code == 202
        data = response.json()
        assert data["pipeline_type"] == "github_sync"
        assert data["status"] == "running"
        assert dispatched == [("github_sync", data["id"])]

    async def test_second_start_conflicts(self, client: AsyncClient, dispatched) -> None:
        await client.post("/api/v1/pipelines/data_processing/start")

        response = await client.post("/api/v1/pipelines/data_processing/start")

        assert response.status_code == 409
        assert len(dispatched) == 1

    async def test_unknown_pipeline(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/pipelines/backfill/start")
        assert response.status_code == 404

    async def test_status_and_stop(self, client: AsyncClient) -> None:
        idle = await client.get("/api/v1/pipelines/github_sync/status")
        assert idle.json()["status"] == "idle"

        await client.post("/api/v1/pipelines/github_sync/start")
        stop = await client.post("/api/v1/pipelines/github_sync/stop")
        status = await client.get("/api/v1/pipelines/github_sync/status", params={"include_count": True})

        assert stop.json() == {"pipeline_type": "github_sync", "stop_requested": True}
        data = status.json()
        assert data["is_running"]
        assert data["stop_requested"]
        assert data["item_count"] == 0

    async def test_stop_idle_pipeline(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/pipelines/contributor_rankings/stop")
        assert response.status_code == 200
        assert not response.json()["stop_requested"]

    async def test_history(self, client: AsyncClient) -> None:
        await client.post("/api/v1/pipelines/github_sync/start")
        await client.post("/api/v1/pipelines/data_enrichment/start")

        everything = await client.get("/api/v1/pipelines/history")
        filtered = await client.get("/api/v1/pipelines/history", params={"pipeline_type": "github_sync"})
        cleared = await client.delete("/api/v1/pipelines/history")

        assert everything.json()["total"] == 2
        assert [run["pipeline_type"] for run in filtered.json()["runs"]] == ["github_sync"]
        # Both runs are still running, so nothing is cleared
        assert cleared.json() == {"deleted": 0}

    async def test_item_count(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/pipelines/data_processing/item-count")
        assert response.status_code == 200
        assert response.json() == {"pipeline_type": "data_processing", "count": 0}


class TestScheduleEndpoints:
    """Tests for pipeline schedule endpoints."""

    async def test_invalid_cron_rejected(self, client: AsyncClient) -> None:
        response = await client.put(
            "/api/v1/pipelines/schedules/github_sync",
            json={"cron_expression": "every hour"},
        )
        assert response.status_code == 422

    async def test_unknown_parameters_rejected(self, client: AsyncClient) -> None:
        response = await client.put(
            "/api/v1/pipelines/schedules/github_sync",
            json={"cron_expression": "0 * * * *", "parameters": {"stars": 1}},
        )
        assert response.status_code == 422

    async def test_schedule_lifecycle(self, client: AsyncClient) -> None:
        created = await client.put(
            "/api/v1/pipelines/schedules/github_sync",
            json={"cron_expression": "0 * * * *", "description": "hourly"},
        )
        assert created.status_code == 200
        assert created.json()["is_active"]

        listed = await client.get("/api/v1/pipelines/schedules")
        assert [s["pipeline_type"] for s in listed.json()] == ["github_sync"]

        toggled = await client.patch(
            "/api/v1/pipelines/schedules/github_sync",
            json={"is_active": False},
        )
        assert not toggled.json()["is_active"]

        deleted = await client.delete("/api/v1/pipelines/schedules/github_sync")
        assert deleted.status_code == 204

        missing = await client.delete("/api/v1/pipelines/schedules/github_sync")
        assert missing.status_code == 404


class TestRankingEndpoints:
    """Tests for ranking endpoints."""

    async def test_latest_without_snapshot(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/rankings/latest")

        assert response.status_code == 200
        data = response.json()
        assert data["calculation_timestamp"] is None
        assert data["entries"] == []
        assert data["total"] == 0

    async def test_trend_needs_two_snapshots(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/rankings/1/trend")
        assert response.status_code == 404


class TestRepositoryEndpoints:
    """Tests for repository endpoints."""

    async def test_list_repositories_empty(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/repositories")
        assert response.status_code == 200
        data = response.json()
        assert data["repositories"] == []
        assert data["total"] == 0

    async def test_statistics_not_found(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/repositories/99/statistics")
        assert response.status_code == 404


class TestScoringEndpoints:
    """Tests for ranking weight endpoints."""

    async def test_defaults_are_created(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/config/scoring")

        assert response.status_code == 200
        dimensions = {w["dimension"] for w in response.json()}
        assert "collaboration" in dimensions
        assert len(dimensions) == 8

    async def test_unknown_dimension_rejected(self, client: AsyncClient) -> None:
        response = await client.put(
            "/api/v1/config/scoring",
            json=[{"dimension": "stars", "weight": 0.5}],
        )
        assert response.status_code == 422
