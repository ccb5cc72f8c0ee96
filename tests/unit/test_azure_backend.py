"""Tests for the az CLI backend, against a recorded fake runner."""

from __future__ import annotations

import io
import json
import subprocess
import tarfile
from pathlib import Path

import pytest

from shipline.backends import azure
from shipline.backends.azure import (
    AzureCliInfrastructure,
    AzureContainerRegistry,
    run_az,
    unpack_build_context,
)
from shipline.core.builder import pack_source_tree
from shipline.core.errors import NotFoundError, ProvisionError, RegistryError
from shipline.core.hasher import content_address, version_from_digest
from shipline.core.provisioner import EnvironmentProvisioner
from shipline.core.registry import FilesystemRegistry
from shipline.core.retry import RetryPolicy
from shipline.models.artifacts import Artifact
from shipline.models.environments import (
    EnvironmentKind,
    EnvironmentSpec,
    LifecycleState,
    ResourceState,
    ServiceDeployment,
)


class FakeAz:
    """Records az invocations and answers from canned responses.

    A list response is replayed one item per call, repeating the last.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.responses: dict[tuple[str, ...], str | list[str]] = {}
        self.errors: dict[tuple[str, ...], ProvisionError] = {}

    def __call__(self, args: list[str]) -> str:
        self.calls.append(args)
        key = tuple(a for a in args if not a.startswith("-"))[:3]
        for prefix, error in self.errors.items():
            if key[: len(prefix)] == prefix:
                raise error
        for prefix, response in self.responses.items():
            if key[: len(prefix)] == prefix:
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return ""

    def commands(self) -> list[str]:
        """Each call's sub-command words, up to the first flag."""
        names = []
        for args in self.calls:
            words = []
            for arg in args:
                if arg.startswith("-"):
                    break
                words.append(arg)
            names.append(" ".join(words))
        return names


def containers(*items: tuple[str, str, str]) -> str:
    return json.dumps(
        [
            {
                "name": name,
                "provisioningState": state,
                "ipAddress": {"fqdn": f"{name}.eastus.azurecontainer.io", "ports": [{"port": 8001}]},
                "containers": [{"image": image}],
            }
            for name, state, image in items
        ]
    )


@pytest.fixture
def az() -> FakeAz:
    return FakeAz()


@pytest.fixture
def backend(az: FakeAz) -> AzureCliInfrastructure:
    return AzureCliInfrastructure(database_admin_password="pw", runner=az)


class TestNaming:
    def test_resource_groups(self, backend):
        assert backend.resource_group("ecommerce-production") == "ecommerce-production-rg"
        assert backend.resource_group("stg-run-1") == "ecommerce-staging-rg-stg-run-1"

    def test_database_url(self, backend):
        assert backend.database_url("stg-1", "order_db") == (
            "postgresql://postgres:pw@stg-1-postgres.postgres.database.azure.com:5432/order_db"
        )

    def test_password_is_required(self, az):
        with pytest.raises(ProvisionError, match="SHIPLINE_DATABASE_ADMIN_PASSWORD"):
            AzureCliInfrastructure(runner=az)
        assert az.calls == []


class TestBeginCreate:
    def test_command_sequence(self, backend, az):
        spec = EnvironmentSpec(
            services=[
                ServiceDeployment(
                    name="order", version="v1", image="reg/order:v1", port=8003, database="order_db"
                )
            ],
            databases=["order_db"],
        )
        backend.begin_create("stg-1", EnvironmentKind.STAGING, spec)

        assert az.commands() == [
            "group create",
            "postgres flexible-server create",
            "postgres flexible-server db create",
            "container create",
        ]
        container = az.calls[-1]
        assert container[container.index("--image") + 1] == "reg/order:v1"
        assert container[container.index("--dns-name-label") + 1] == "stg-1-order"
        secure = container[container.index("--secure-environment-variables") + 1]
        assert secure.startswith("DATABASE_URL=postgresql://")
        assert "--no-wait" in container
        assert "--registry-username" not in container
        group = az.calls[0]
        assert group[group.index("--tags") + 1] == "shipline-services=1"

    def test_no_databases_skips_server(self, backend, az):
        backend.begin_create("prod", EnvironmentKind.PRODUCTION, EnvironmentSpec())
        assert az.commands() == ["group create"]
        assert "shipline-services=0" in az.calls[0]

    def test_registry_credentials_reach_containers(self, az):
        backend = AzureCliInfrastructure(
            database_admin_password="pw",
            registry_server="ecommerceacr.azurecr.io",
            registry_username="ecommerceacr",
            registry_password="s3cret",
            runner=az,
        )
        spec = EnvironmentSpec(
            services=[
                ServiceDeployment(
                    name="product",
                    version="v1",
                    image="ecommerceacr.azurecr.io/product:v1",
                    port=8001,
                )
            ]
        )
        backend.begin_create("stg-1", EnvironmentKind.STAGING, spec)

        container = az.calls[-1]
        assert container[container.index("--registry-login-server") + 1] == (
            "ecommerceacr.azurecr.io"
        )
        assert container[container.index("--registry-username") + 1] == "ecommerceacr"
        assert container[container.index("--registry-password") + 1] == "s3cret"


class TestPoll:
    @pytest.mark.parametrize(
        ("tags", "states", "expected"),
        [
            ({"shipline-services": "2"}, ["Succeeded", "Succeeded"], ResourceState.READY),
            ({"shipline-services": "2"}, ["Succeeded", "Creating"], ResourceState.PENDING),
            ({"shipline-services": "2"}, ["Succeeded", "Failed"], ResourceState.FAILED),
            ({"shipline-services": "2"}, ["Succeeded"], ResourceState.PENDING),
            ({"shipline-services": "2"}, [], ResourceState.PENDING),
            ({"shipline-services": "0"}, [], ResourceState.READY),
            (None, [], ResourceState.READY),
        ],
    )
    def test_states(self, backend, az, tags, states, expected):
        az.responses[("group", "show")] = json.dumps(tags)
        az.responses[("container", "list")] = containers(
            *[(f"stg-1-svc{i}", s, "reg/svc:v1") for i, s in enumerate(states)]
        )
        assert backend.poll("stg-1") == expected


class TestThroughProvisioner:
    def _provisioner(self, az, clock) -> EnvironmentProvisioner:
        return EnvironmentProvisioner(
            AzureCliInfrastructure(database_admin_password="pw", runner=az),
            timeout=60,
            poll_interval=5,
            retry_policy=RetryPolicy(attempts=2, base_delay=0.0),
            clock=clock,
            sleep=clock.sleep,
        )

    def test_production_without_services_becomes_ready(self, az, clock):
        az.responses[("group", "exists")] = ["false", "true"]
        az.responses[("group", "show")] = json.dumps({"shipline-services": "0"})
        az.responses[("container", "list")] = "[]"
        env = self._provisioner(az, clock).create(
            EnvironmentKind.PRODUCTION,
            EnvironmentSpec(databases=["product_db", "customer_db", "order_db"]),
            "ecommerce-production",
        )

        assert env.lifecycle_state == LifecycleState.READY
        assert "group delete" not in az.commands()
        assert az.commands().count("postgres flexible-server db create") == 3
        assert clock.sleeps == []

    def test_staging_waits_for_every_container(self, az, clock):
        az.responses[("group", "exists")] = ["false", "true"]
        az.responses[("group", "show")] = json.dumps({"shipline-services": "2"})
        az.responses[("container", "list")] = [
            "[]",
            containers(("stg-1-product", "Succeeded", "reg/product:v1")),
            containers(
                ("stg-1-product", "Succeeded", "reg/product:v1"),
                ("stg-1-order", "Succeeded", "reg/order:v1"),
            ),
        ]
        spec = EnvironmentSpec(
            services=[
                ServiceDeployment(name="product", version="v1", image="reg/product:v1", port=8001),
                ServiceDeployment(name="order", version="v1", image="reg/order:v1", port=8003),
            ]
        )
        env = self._provisioner(az, clock).create(EnvironmentKind.STAGING, spec, "stg-1")

        assert env.lifecycle_state == LifecycleState.READY
        assert sorted(env.bindings) == ["order", "product"]
        assert clock.sleeps == [5, 5]


class TestDescribe:
    def test_missing_group(self, backend, az):
        az.responses[("group", "exists")] = "false\n"
        assert backend.describe("stg-1") is None

    def test_bindings_and_versions(self, backend, az):
        az.responses[("group", "exists")] = "true\n"
        az.responses[("container", "list")] = containers(
            ("ecommerce-production-product", "Succeeded", "reg.azurecr.io/product:ab12cd")
        )
        env = backend.describe("ecommerce-production")
        assert env.kind == EnvironmentKind.PRODUCTION
        assert env.network_ref == "ecommerce-production-rg"
        assert env.versions == {"product": "ab12cd"}
        assert env.bindings == {
            "product": "http://ecommerce-production-product.eastus.azurecontainer.io:8001"
        }


class TestDelete:
    def test_deletes_group_without_waiting(self, backend, az):
        backend.delete("stg-1")
        assert az.calls == [
            ["group", "delete", "--name", "ecommerce-staging-rg-stg-1", "--yes", "--no-wait"]
        ]

    def test_missing_group_is_fine(self, backend, az):
        az.errors[("group", "delete")] = ProvisionError("(ResourceGroupNotFound) gone")
        backend.delete("stg-1")

    def test_other_errors_propagate(self, backend, az):
        az.errors[("group", "delete")] = ProvisionError("(AuthorizationFailed) denied")
        with pytest.raises(ProvisionError, match="AuthorizationFailed"):
            backend.delete("stg-1")


class TestRunAz:
    def _fake_run(self, returncode: int, stdout: str = "", stderr: str = ""):
        def fake(argv, **kwargs):
            return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

        return fake

    def test_returns_stdout(self, monkeypatch):
        monkeypatch.setattr(azure.subprocess, "run", self._fake_run(0, stdout="true\n"))
        assert run_az(["group", "exists", "--name", "rg"]) == "true\n"

    def test_transient_failure_is_retryable(self, monkeypatch):
        monkeypatch.setattr(
            azure.subprocess, "run", self._fake_run(1, stderr="Service Unavailable")
        )
        with pytest.raises(ProvisionError) as exc_info:
            run_az(["group", "create"])
        assert exc_info.value.retryable is True

    def test_authorization_failure_is_terminal(self, monkeypatch):
        monkeypatch.setattr(
            azure.subprocess, "run", self._fake_run(1, stderr="(AuthorizationFailed) no")
        )
        with pytest.raises(ProvisionError) as exc_info:
            run_az(["group", "create"])
        assert exc_info.value.retryable is False

    def test_missing_cli(self, monkeypatch):
        def missing(argv, **kwargs):
            raise FileNotFoundError("az")

        monkeypatch.setattr(azure.subprocess, "run", missing)
        with pytest.raises(ProvisionError, match="not installed"):
            run_az(["version"])


def source_artifact(root: Path, service: str = "product") -> Artifact:
    (root / "app").mkdir(parents=True, exist_ok=True)
    (root / "app" / "main.py").write_text(f"SERVICE = {service!r}\n", encoding="utf-8")
    (root / "Dockerfile").write_text("FROM python:3.12-slim\n", encoding="utf-8")
    image = pack_source_tree(root)
    address = content_address(image)
    return Artifact(
        service_name=service,
        version=version_from_digest(address),
        content_address=address,
        size_bytes=len(image),
        image=image,
    )


class TestAzureContainerRegistry:
    @pytest.fixture
    def acr(self, az, tmp_dir) -> AzureContainerRegistry:
        store = FilesystemRegistry(
            tmp_dir / "registry",
            registry_host="ecommerceacr.azurecr.io",
            retry_policy=RetryPolicy(attempts=2, base_delay=0.0),
            sleep=lambda _: None,
        )
        return AzureContainerRegistry(
            store,
            "ecommerceacr",
            retry_policy=RetryPolicy(attempts=2, base_delay=0.0),
            runner=az,
            sleep=lambda _: None,
        )

    def test_push_builds_missing_image(self, acr, az, tmp_dir):
        artifact = source_artifact(tmp_dir / "src")
        az.errors[("acr", "repository", "show")] = ProvisionError(
            "(ResourceNotFound) manifest_unknown: image not found"
        )
        acr.push(artifact)

        assert az.commands() == ["acr repository show", "acr build"]
        build = az.calls[-1]
        assert build[build.index("--registry") + 1] == "ecommerceacr"
        assert build[build.index("--image") + 1] == f"product:{artifact.version}"

    def test_push_skips_published_image(self, acr, az, tmp_dir):
        acr.push(source_artifact(tmp_dir / "src"))
        assert az.commands() == ["acr repository show"]

    def test_exists_needs_the_image_in_acr(self, acr, az, tmp_dir):
        artifact = source_artifact(tmp_dir / "src")
        acr.push(artifact)
        assert acr.exists("product", artifact.version) is True

        az.errors[("acr", "repository", "show")] = ProvisionError("name_unknown: repository")
        assert acr.exists("product", artifact.version) is False

    def test_pull_refuses_unpublished_image(self, acr, az, tmp_dir):
        artifact = source_artifact(tmp_dir / "src")
        acr.push(artifact)
        ref = acr.pull("product", artifact.version)
        assert ref.reference == f"ecommerceacr.azurecr.io/product:{artifact.version}"

        az.errors[("acr", "repository", "show")] = ProvisionError("(ResourceNotFound) not found")
        with pytest.raises(NotFoundError, match="missing from ecommerceacr"):
            acr.pull("product", artifact.version)

    def test_other_acr_errors_propagate(self, acr, az, tmp_dir):
        artifact = source_artifact(tmp_dir / "src")
        az.errors[("acr", "repository", "show")] = ProvisionError(
            "(AuthorizationFailed) denied", retryable=False
        )
        with pytest.raises(RegistryError, match="AuthorizationFailed") as exc_info:
            acr.push(artifact)
        assert exc_info.value.services == ["product"]
        assert "acr build" not in az.commands()


class TestUnpackBuildContext:
    def test_restores_source_tree(self, tmp_dir):
        artifact = source_artifact(tmp_dir / "src")
        target = tmp_dir / "context"
        target.mkdir()
        unpack_build_context(artifact.image, target)
        assert (target / "app" / "main.py").read_text(encoding="utf-8") == "SERVICE = 'product'\n"
        assert (target / "Dockerfile").exists()

    @pytest.mark.parametrize("name", ["../escape.py", "/etc/passwd"])
    def test_rejects_paths_outside_target(self, tmp_dir, name):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=name)
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))
        target = tmp_dir / "context"
        target.mkdir()
        with pytest.raises(RegistryError, match="Unexpected archive member"):
            unpack_build_context(buffer.getvalue(), target)
        assert not (tmp_dir / "escape.py").exists()
