"""Tests for survey_mail.health."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from survey_mail.config import Settings
from survey_mail.health import create_health_app
from survey_mail.models import ServiceStatus
from survey_mail.scheduler import IngestionScheduler


@pytest.fixture
def scheduler(settings: Settings) -> IngestionScheduler:
    service = MagicMock()
    service.health_check = AsyncMock(return_value={"dispatch_queue_pending": 0})
    s = IngestionScheduler(service, settings)
    s.start_time = time.monotonic()
    return s


@pytest.fixture
def health_app(scheduler: IngestionScheduler):
    return create_health_app(scheduler)


async def _get(app, path: str) -> httpx.Response:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        return await client.get(path)


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health_starting(self, health_app, scheduler: IngestionScheduler):
        scheduler.status = ServiceStatus.STARTING
        resp = await _get(health_app, "/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service_name"] == "survey-mail-poller"
        assert data["status"] == "starting"
        assert "uptime_seconds" in data
        assert data["details"]["dispatch_queue_pending"] == 0

    @pytest.mark.asyncio
    async def test_health_degraded_still_alive(self, health_app, scheduler: IngestionScheduler):
        scheduler.status = ServiceStatus.DEGRADED
        resp = await _get(health_app, "/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_health_stopped_returns_503(self, health_app, scheduler: IngestionScheduler):
        scheduler.status = ServiceStatus.STOPPED
        resp = await _get(health_app, "/health")
        assert resp.status_code == 503


class TestReadyEndpoint:
    @pytest.mark.asyncio
    async def test_ready_when_running(self, health_app, scheduler: IngestionScheduler):
        scheduler.status = ServiceStatus.RUNNING
        resp = await _get(health_app, "/ready")
        assert resp.status_code == 200
        assert resp.json() == {"ready": True}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ServiceStatus.STARTING, ServiceStatus.DEGRADED])
    async def test_not_ready(self, health_app, scheduler: IngestionScheduler, status):
        scheduler.status = status
        resp = await _get(health_app, "/ready")
        assert resp.status_code == 503
        assert resp.json() == {"ready": False}
