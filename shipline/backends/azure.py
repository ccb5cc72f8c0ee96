"""Azure backend driven through the ``az`` CLI.

Each environment maps to one resource group. Production uses the fixed
``ecommerce-production-rg`` group; staging environments get a group per
run (``ecommerce-staging-rg-<environment id>``), so deleting the group
removes every resource the run created.

Resources per environment:
- PostgreSQL flexible server ``<env>-postgres`` with one database per service
- one container instance per service, DNS label ``<env>-<service>``, pulling
  its image from Azure Container Registry with the configured credentials

The resource group carries a ``shipline-services`` tag with the number of
containers the environment was created with; it is READY once that many
containers have succeeded. The database server is created synchronously.
"""

from __future__ import annotations

import io
import json
import logging
import subprocess
import tarfile
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from shipline.core.errors import NotFoundError, ProvisionError, RegistryError
from shipline.core.registry import FilesystemRegistry
from shipline.core.retry import RetryPolicy, call_with_retry
from shipline.models.artifacts import Artifact, ImageRef
from shipline.models.environments import (
    Environment,
    EnvironmentKind,
    EnvironmentSpec,
    LifecycleState,
    ResourceState,
    ServiceDeployment,
)

logger = logging.getLogger(__name__)

# Substrings of az error output that no amount of retrying will fix.
_TERMINAL_MARKERS: tuple[str, ...] = (
    "AuthorizationFailed",
    "AuthenticationFailed",
    "QuotaExceeded",
    "InvalidParameter",
    "InvalidTemplate",
    "BadRequest",
    "az login",
)

_SERVICES_TAG = "shipline-services"


def run_az(args: list[str]) -> str:
    """Run ``az <args>`` and return stdout, raising ``ProvisionError`` on failure."""
    try:
        result = subprocess.run(
            ["az", *args],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ProvisionError("Azure CLI (az) is not installed") from exc
    if result.returncode != 0:
        stderr = result.stderr.strip()
        retryable = not any(marker in stderr for marker in _TERMINAL_MARKERS)
        raise ProvisionError(
            f"az {' '.join(args[:3])} failed: {stderr or result.returncode}",
            retryable=retryable,
        )
    return result.stdout


class AzureCliInfrastructure:
    """``InfrastructureBackend`` backed by Azure resource groups.

    Parameters
    ----------
    location:
        Azure region for every resource.
    production_environment_id / production_resource_group:
        The long-lived production environment and its resource group.
    staging_resource_group_prefix:
        Prefix for per-run staging resource groups.
    database_admin_user / database_admin_password:
        PostgreSQL administrator credentials. The password is required: every
        process must hand containers the same one the server was created with.
    registry_server / registry_username / registry_password:
        Container registry the images are pulled from. Credentials are passed
        to each container group when a username is configured.
    runner:
        Callable executing ``az`` with the given arguments; injectable for
        tests.
    """

    def __init__(
        self,
        *,
        location: str = "eastus",
        production_environment_id: str = "ecommerce-production",
        production_resource_group: str = "ecommerce-production-rg",
        staging_resource_group_prefix: str = "ecommerce-staging-rg",
        database_admin_user: str = "postgres",
        database_admin_password: str = "",
        registry_server: str = "",
        registry_username: str = "",
        registry_password: str = "",
        runner: Callable[[list[str]], str] = run_az,
    ) -> None:
        self._location = location
        self._production_id = production_environment_id
        self._production_group = production_resource_group
        self._staging_prefix = staging_resource_group_prefix
        self._db_user = database_admin_user
        if not database_admin_password:
            raise ProvisionError(
                "The Azure backend needs a database admin password "
                "(set SHIPLINE_DATABASE_ADMIN_PASSWORD)"
            )
        self._db_password = database_admin_password
        self._registry_server = registry_server
        self._registry_username = registry_username
        self._registry_password = registry_password
        self._run = runner

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def resource_group(self, environment_id: str) -> str:
        if environment_id == self._production_id:
            return self._production_group
        return f"{self._staging_prefix}-{environment_id}"

    def _kind(self, environment_id: str) -> EnvironmentKind:
        if environment_id == self._production_id:
            return EnvironmentKind.PRODUCTION
        return EnvironmentKind.STAGING

    @staticmethod
    def _server(environment_id: str) -> str:
        return f"{environment_id}-postgres"

    def database_url(self, environment_id: str, database: str) -> str:
        host = f"{self._server(environment_id)}.postgres.database.azure.com"
        return f"postgresql://{self._db_user}:{self._db_password}@{host}:5432/{database}"

    # ------------------------------------------------------------------
    # InfrastructureBackend
    # ------------------------------------------------------------------

    def begin_create(
        self, environment_id: str, kind: EnvironmentKind, spec: EnvironmentSpec
    ) -> None:
        group = self.resource_group(environment_id)
        self._run([
            "group", "create",
            "--name", group,
            "--location", self._location,
            "--tags", f"{_SERVICES_TAG}={len(spec.services)}",
            "--output", "none",
        ])
        if spec.databases:
            self._run([
                "postgres", "flexible-server", "create",
                "--resource-group", group,
                "--name", self._server(environment_id),
                "--location", self._location,
                "--admin-user", self._db_user,
                "--admin-password", self._db_password,
                "--sku-name", "Standard_B1ms",
                "--tier", "Burstable",
                "--public-access", "0.0.0.0",
                "--storage-size", "32",
                "--output", "none",
            ])
            for database in spec.databases:
                self._run([
                    "postgres", "flexible-server", "db", "create",
                    "--resource-group", group,
                    "--server-name", self._server(environment_id),
                    "--database-name", database,
                    "--output", "none",
                ])
        for deployment in spec.services:
            self._create_container(environment_id, deployment)

    def _create_container(self, environment_id: str, deployment: ServiceDeployment) -> None:
        group = self.resource_group(environment_id)
        args = [
            "container", "create",
            "--resource-group", group,
            "--name", f"{environment_id}-{deployment.name}",
            "--image", deployment.image,
            "--ports", str(deployment.port),
            "--dns-name-label", f"{environment_id}-{deployment.name}",
            "--location", self._location,
            "--environment-variables", f"PORT={deployment.port}",
        ]
        if self._registry_username:
            args += [
                "--registry-login-server", self._registry_server,
                "--registry-username", self._registry_username,
                "--registry-password", self._registry_password,
            ]
        if deployment.database:
            args += [
                "--secure-environment-variables",
                f"DATABASE_URL={self.database_url(environment_id, deployment.database)}",
            ]
        args += ["--no-wait", "--output", "none"]
        self._run(args)

    def _containers(self, environment_id: str) -> list[dict[str, Any]]:
        output = self._run([
            "container", "list",
            "--resource-group", self.resource_group(environment_id),
            "--output", "json",
        ])
        return json.loads(output or "[]")

    def _expected_services(self, environment_id: str) -> int:
        output = self._run([
            "group", "show",
            "--name", self.resource_group(environment_id),
            "--query", "tags",
            "--output", "json",
        ])
        tags = json.loads(output or "null") or {}
        return int(tags.get(_SERVICES_TAG, 0))

    def poll(self, environment_id: str) -> ResourceState:
        expected = self._expected_services(environment_id)
        states = [
            c.get("provisioningState", "") for c in self._containers(environment_id)
        ]
        if any(state == "Failed" for state in states):
            return ResourceState.FAILED
        if len(states) >= expected and all(state == "Succeeded" for state in states):
            return ResourceState.READY
        return ResourceState.PENDING

    def describe(self, environment_id: str) -> Environment | None:
        group = self.resource_group(environment_id)
        exists = self._run(["group", "exists", "--name", group]).strip()
        if exists != "true":
            return None

        bindings: dict[str, str] = {}
        versions: dict[str, str] = {}
        prefix = f"{environment_id}-"
        for container in self._containers(environment_id):
            service = container.get("name", "").removeprefix(prefix)
            ip = container.get("ipAddress") or {}
            ports = ip.get("ports") or [{}]
            fqdn = ip.get("fqdn") or ip.get("ip")
            if fqdn:
                bindings[service] = f"http://{fqdn}:{ports[0].get('port', 80)}"
            images = container.get("containers") or [{}]
            image = images[0].get("image", "")
            if ":" in image:
                versions[service] = image.rsplit(":", 1)[1]

        return Environment(
            kind=self._kind(environment_id),
            identifier=environment_id,
            network_ref=group,
            bindings=bindings,
            versions=versions,
            lifecycle_state=LifecycleState.READY,
        )

    def deploy_service(self, environment_id: str, deployment: ServiceDeployment) -> None:
        # Re-creating a container group with the same name replaces its image
        # in place; the resource group and database server are untouched.
        self._create_container(environment_id, deployment)

    def delete(self, environment_id: str) -> None:
        try:
            self._run([
                "group", "delete",
                "--name", self.resource_group(environment_id),
                "--yes",
                "--no-wait",
            ])
        except ProvisionError as exc:
            if "ResourceGroupNotFound" not in exc.message:
                raise
            logger.info("Resource group for %s already gone", environment_id)


class AzureContainerRegistry:
    """``ArtifactRegistry`` that also publishes images to Azure Container Registry.

    The wrapped filesystem registry keeps the authoritative copy of each
    artifact and its digest. Every version pushed is additionally built
    into ``<registry>.azurecr.io/<service>:<version>`` with ``az acr build``
    from the artifact's build context, which is the reference Azure
    containers pull.

    Parameters
    ----------
    store:
        Filesystem registry whose ``registry_host`` is the ACR login server.
    registry_name:
        ACR resource name (the first label of the login server).
    """

    def __init__(
        self,
        store: FilesystemRegistry,
        registry_name: str,
        *,
        retry_policy: RetryPolicy | None = None,
        runner: Callable[[list[str]], str] = run_az,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._name = registry_name
        self._retry = retry_policy or RetryPolicy()
        self._run = runner
        self._sleep = sleep

    def push(self, artifact: Artifact) -> None:
        """Store *artifact*, then build its image in ACR unless already there."""
        self._store.push(artifact)
        if self._published(artifact.service_name, artifact.version):
            logger.info("%s already in %s; skipping image build", artifact.ref, self._name)
            return
        call_with_retry(
            lambda: self._build_image(artifact),
            self._retry,
            description=f"acr build {artifact.ref}",
            sleep=self._sleep,
        )
        logger.info("Built %s:%s in %s", artifact.service_name, artifact.version, self._name)

    def exists(self, service_name: str, version: str) -> bool:
        return self._store.exists(service_name, version) and self._published(
            service_name, version
        )

    def pull(self, service_name: str, version: str) -> ImageRef:
        image = self._store.pull(service_name, version)
        if not self._published(service_name, version):
            raise NotFoundError(
                f"Image {service_name}:{version} is missing from {self._name}",
                services=[service_name],
            )
        return image

    def versions(self, service_name: str) -> list[str]:
        return self._store.versions(service_name)

    def _published(self, service_name: str, version: str) -> bool:
        try:
            self._acr(
                [
                    "acr", "repository", "show",
                    "--name", self._name,
                    "--image", f"{service_name}:{version}",
                    "--output", "none",
                ],
                service_name,
            )
        except RegistryError as exc:
            if any(marker in exc.message.lower() for marker in _MISSING_IMAGE_MARKERS):
                return False
            raise
        return True

    def _build_image(self, artifact: Artifact) -> None:
        with tempfile.TemporaryDirectory(prefix="shipline-acr-") as context:
            unpack_build_context(artifact.image, Path(context))
            self._acr(
                [
                    "acr", "build",
                    "--registry", self._name,
                    "--image", f"{artifact.service_name}:{artifact.version}",
                    "--no-logs",
                    "--output", "none",
                    context,
                ],
                artifact.service_name,
            )

    def _acr(self, args: list[str], service_name: str) -> str:
        try:
            return self._run(args)
        except ProvisionError as exc:
            raise RegistryError(
                exc.message, retryable=exc.retryable, services=[service_name]
            ) from exc


# Lower-cased fragments of az output for an image or repository that does not exist.
_MISSING_IMAGE_MARKERS: tuple[str, ...] = ("not found", "manifest_unknown", "name_unknown")


def unpack_build_context(image: bytes, target: Path) -> None:
    """Extract an artifact's tar archive into *target*."""
    with tarfile.open(fileobj=io.BytesIO(image)) as archive:
        for member in archive.getmembers():
            destination = (target / member.name).resolve()
            if not member.isfile() or not destination.is_relative_to(target.resolve()):
                raise RegistryError(f"Unexpected archive member: {member.name}")
            destination.parent.mkdir(parents=True, exist_ok=True)
            source = archive.extractfile(member)
            destination.write_bytes(source.read() if source is not None else b"")
