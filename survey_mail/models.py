"""Result and status models shared by the service, scheduler and health app."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ServiceStatus(str, Enum):
    """Runtime status of a long-running poller."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class RunResult(BaseModel):
    """Outcome of one background dispatch or reminder run."""

    project_id: int
    kind: str = Field(description="pending_members, selected or reminder")
    target_count: int = 0
    sent_count: int = 0
    failed_teacher_ids: list[int] = Field(default_factory=list)


class IngestionReport(BaseModel):
    """Tally of one ingestion pass over a mailbox."""

    mailbox: str
    fetched: int = 0
    stored: int = 0
    partial: int = 0
    duplicate: int = 0
    unresolved: int = 0
    ambiguous: int = 0
    parse_failed: int = 0
    failed: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def record(self, outcome: str) -> None:
        """Increment the counter named after a correlator outcome."""
        setattr(self, outcome, getattr(self, outcome) + 1)


class HealthStatus(BaseModel):
    """Response model for the /health and /ready endpoints."""

    service_name: str = Field(description="Name of the service")
    status: ServiceStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Service-specific health details (e.g. last ingestion pass)",
    )
