"""FastAPI health endpoints for the long-running poller."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .scheduler import IngestionScheduler

_ALIVE = (ServiceStatus.STARTING, ServiceStatus.RUNNING, ServiceStatus.DEGRADED)


def create_health_app(scheduler: IngestionScheduler) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    A degraded poller (last pass could not reach the mailbox) is still
    alive but not ready.
    """
    app = FastAPI(title=f"{scheduler.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await scheduler.health_check()
        status = HealthStatus(
            service_name=scheduler.name,
            status=scheduler.status,
            uptime_seconds=time.monotonic() - scheduler.start_time,
            details=details,
        )
        code = 200 if scheduler.status in _ALIVE else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = scheduler.status == ServiceStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
