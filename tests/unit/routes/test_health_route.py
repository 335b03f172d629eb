"""Unit tests for GET /api/health (api/routes/health.py).

Tests cover:
- "ok" when both the database and Redis checks pass
- "degraded" (still HTTP 200) when either check fails
- The response echoes a caller-supplied X-Request-ID

The two connectivity checks are patched; no database or Redis is contacted.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from activity_harvester import __version__

_HEALTH = "activity_harvester.api.routes.health"


@pytest.mark.asyncio
class TestHealthRoute:
    async def test_all_checks_ok(self, api_client) -> None:
        with (
            patch(f"{_HEALTH}._check_database", new=AsyncMock(return_value="ok")),
            patch(f"{_HEALTH}._check_redis", new=AsyncMock(return_value="ok")),
        ):
            response = await api_client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["database"] == "ok"
        assert body["redis"] == "ok"
        assert "timestamp" in body

    @pytest.mark.parametrize("db_status,redis_status", [("error", "ok"), ("ok", "error")])
    async def test_failed_check_reports_degraded(
        self, api_client, db_status, redis_status
    ) -> None:
        with (
            patch(f"{_HEALTH}._check_database", new=AsyncMock(return_value=db_status)),
            patch(f"{_HEALTH}._check_redis", new=AsyncMock(return_value=redis_status)),
        ):
            response = await api_client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    async def test_request_id_is_echoed(self, api_client) -> None:
        with (
            patch(f"{_HEALTH}._check_database", new=AsyncMock(return_value="ok")),
            patch(f"{_HEALTH}._check_redis", new=AsyncMock(return_value="ok")),
        ):
            response = await api_client.get(
                "/api/health", headers={"X-Request-ID": "req-health-1"}
            )

        assert response.headers["X-Request-ID"] == "req-health-1"
