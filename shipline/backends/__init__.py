"""Infrastructure backends for the environment provisioner.

- ``local``: in-process (optionally file-persisted) resources whose service
  endpoints follow a URL template; used for development and tests.
- ``azure``: drives the ``az`` CLI (resource groups, PostgreSQL flexible
  server, container instances) and publishes images to Azure Container
  Registry.
"""

from __future__ import annotations

from shipline.backends.azure import AzureCliInfrastructure, AzureContainerRegistry
from shipline.backends.local import LocalInfrastructure
from shipline.config import PipelineSettings
from shipline.core.errors import RegistryError
from shipline.core.provisioner import InfrastructureBackend
from shipline.core.registry import ArtifactRegistry, FilesystemRegistry
from shipline.core.retry import RetryPolicy

_ACR_SUFFIX = ".azurecr.io"


def create_backend(settings: PipelineSettings) -> InfrastructureBackend:
    """Build the backend selected by ``settings.backend``."""
    if settings.backend == "local":
        return LocalInfrastructure(
            endpoint_template=settings.local_endpoint_template,
            state_path=settings.infrastructure_state_path,
        )
    if settings.backend == "azure":
        return AzureCliInfrastructure(
            location=settings.location,
            production_environment_id=settings.production_environment_id,
            production_resource_group=settings.production_resource_group,
            staging_resource_group_prefix=settings.staging_resource_group_prefix,
            database_admin_user=settings.database_admin_user,
            database_admin_password=settings.database_admin_password,
            registry_server=settings.registry_host,
            registry_username=settings.registry_username,
            registry_password=settings.registry_password,
        )
    raise ValueError(f"Unknown infrastructure backend: {settings.backend!r}")


def create_registry(
    settings: PipelineSettings, retry_policy: RetryPolicy | None = None
) -> ArtifactRegistry:
    """Build the artifact registry matching ``settings.backend``.

    Azure deployments pull from ACR, so the azure backend requires
    ``registry_host`` to be an ACR login server.
    """
    store = FilesystemRegistry(
        settings.registry_path,
        registry_host=settings.registry_host,
        retry_policy=retry_policy,
    )
    if settings.backend != "azure":
        return store
    if not settings.registry_host.endswith(_ACR_SUFFIX):
        raise RegistryError(
            f"The Azure backend needs an ACR login server as registry host, "
            f"got {settings.registry_host!r} (set SHIPLINE_REGISTRY_HOST)"
        )
    return AzureContainerRegistry(
        store,
        settings.registry_host.removesuffix(_ACR_SUFFIX),
        retry_policy=retry_policy,
    )


__all__ = [
    "AzureCliInfrastructure",
    "AzureContainerRegistry",
    "LocalInfrastructure",
    "create_backend",
    "create_registry",
]
