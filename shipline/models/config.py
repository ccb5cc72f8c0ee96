"""Pipeline topology configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from shipline.models.services import DEFAULT_SERVICES, Service


class PipelineConfig(BaseModel):
    """Fixed three-stage topology: which services, which branches."""

    model_config = ConfigDict(frozen=True)

    project_name: str = "ecommerce"
    services: list[Service] = Field(default_factory=lambda: list(DEFAULT_SERVICES))
    integration_branch: str = "testing"
    main_branch: str = "main"
    staging_prefix: str = "stg"

    def service(self, name: str) -> Service:
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(f"Unknown service: {name}")

    @property
    def service_names(self) -> list[str]:
        return [s.name for s in self.services]
