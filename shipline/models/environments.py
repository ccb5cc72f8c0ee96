"""Runtime environment models: staging (ephemeral) and production."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class EnvironmentKind(str, Enum):
    STAGING = "staging"
    PRODUCTION = "production"


class LifecycleState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    DEGRADED = "degraded"
    TEARING_DOWN = "tearing_down"
    DESTROYED = "destroyed"


class ResourceState(str, Enum):
    """State reported by an infrastructure backend while polling."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class ServiceDeployment(BaseModel):
    """One service entry of an environment spec."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    image: str = ""  # pullable reference
    port: int = 8000
    database: str | None = None


class EnvironmentSpec(BaseModel):
    """Declarative provisioning request: services, network and databases."""

    model_config = ConfigDict(frozen=True)

    services: list[ServiceDeployment] = []
    network: bool = True
    databases: list[str] = []

    @property
    def versions(self) -> dict[str, str]:
        return {s.name: s.version for s in self.services}


class Environment(BaseModel):
    """A provisioned (or formerly provisioned) runtime environment."""

    model_config = ConfigDict(frozen=True)

    kind: EnvironmentKind
    identifier: str
    network_ref: str = ""
    bindings: dict[str, str] = {}  # service -> endpoint base URL
    versions: dict[str, str] = {}  # service -> running version
    lifecycle_state: LifecycleState = LifecycleState.PROVISIONING
