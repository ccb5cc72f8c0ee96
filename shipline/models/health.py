"""Health verification report models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class ServiceHealth(BaseModel):
    """Per-service outcome of a ``wait_healthy`` call."""

    model_config = ConfigDict(frozen=True)

    service: str
    status: HealthStatus
    consecutive_successes: int = 0
    checks: int = 0
    last_error: str | None = None


class HealthReport(BaseModel):
    """Overall health: HEALTHY only if every required service is healthy."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    services: dict[str, ServiceHealth] = {}
    elapsed_seconds: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def failing(self) -> list[str]:
        return sorted(
            name
            for name, health in self.services.items()
            if health.status != HealthStatus.HEALTHY
        )
