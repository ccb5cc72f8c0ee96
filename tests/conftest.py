"""Shared test fixtures for Shipline."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
import pytest

from shipline.backends.local import LocalInfrastructure
from shipline.config import PipelineSettings
from shipline.core.acceptance import SmokeAcceptanceSuite
from shipline.core.builder import ArtifactBuilder, TestOutcome
from shipline.core.health import HealthVerifier
from shipline.core.orchestrator import DeploymentOrchestrator
from shipline.core.provisioner import EnvironmentProvisioner
from shipline.core.registry import FilesystemRegistry
from shipline.core.retry import RetryPolicy
from shipline.core.run_ledger import RunLedger
from shipline.models.config import PipelineConfig
from shipline.models.services import DEFAULT_SERVICES, Service

ENDPOINT_TEMPLATE = "http://{service}.{environment}.test"


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StaticTestRunner:
    """Unit test runner whose outcome is decided per service name."""

    __test__ = False  # not a pytest test class

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = set(failing or ())
        self.calls: list[str] = []

    def run(self, service: Service, source_path: Path) -> TestOutcome:
        self.calls.append(service.name)
        if service.name in self.failing:
            return TestOutcome(False, f"FAILED tests for {service.name}")
        return TestOutcome(True, f"3 passed in {source_path.name}")


class FakeServices:
    """HTTP side of the services: which hosts answer 200 on /health."""

    def __init__(self) -> None:
        self.unhealthy: set[str] = set()  # "service" or "service.environment"
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        host = request.url.host.removesuffix(".test")
        service = host.split(".", 1)[0]
        if service in self.unhealthy or host in self.unhealthy:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"status": "ok"})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


def write_service_tree(root: Path, services: list[Service] = DEFAULT_SERVICES) -> Path:
    """Create a minimal source tree for each service under *root*."""
    for service in services:
        source = root / service.source_location
        (source / "app").mkdir(parents=True, exist_ok=True)
        (source / "app" / "main.py").write_text(
            f"SERVICE = {service.name!r}\nPORT = {service.port}\n", encoding="utf-8"
        )
        (source / "requirements.txt").write_text("fastapi\nuvicorn\n", encoding="utf-8")
    return root


@dataclass
class Harness:
    """An orchestrator wired to local fakes, plus handles on those fakes."""

    orchestrator: DeploymentOrchestrator
    backend: LocalInfrastructure
    clock: FakeClock
    tests: StaticTestRunner
    services: FakeServices
    source_root: Path

    @property
    def ledger(self) -> RunLedger:
        return self.orchestrator.ledger


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def make_test_runner() -> Callable[..., StaticTestRunner]:
    """Factory fixture: a unit test runner failing for the given services."""
    return StaticTestRunner


@pytest.fixture
def fake_services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, base_delay=0.5, max_delay=2.0)


@pytest.fixture
def source_root(tmp_dir: Path) -> Path:
    """A checkout holding the product, customer and order services."""
    return write_service_tree(tmp_dir / "checkout")


@pytest.fixture
def settings(tmp_dir: Path) -> PipelineSettings:
    return PipelineSettings(
        _env_file=None,
        ledger_path=tmp_dir / "state" / "ledger.db",
        registry_path=tmp_dir / "state" / "registry",
        build_log_dir=tmp_dir / "state" / "build-logs",
        infrastructure_state_path=tmp_dir / "state" / "infrastructure.json",
        local_endpoint_template=ENDPOINT_TEMPLATE,
        health_deadline_seconds=10.0,
        health_poll_interval_seconds=1.0,
        health_poll_jitter_seconds=0.0,
        health_consecutive_successes=2,
        provision_timeout_seconds=30.0,
        provision_poll_interval_seconds=1.0,
        max_concurrent_runs=2,
    )


@pytest.fixture
def make_harness(
    tmp_dir: Path,
    source_root: Path,
    settings: PipelineSettings,
    clock: FakeClock,
    fast_retry: RetryPolicy,
) -> Callable[..., Harness]:
    """Factory fixture: build a fully faked orchestrator.

    Keyword arguments: ``failing_tests`` (service names whose unit tests
    fail), ``ready_after_polls`` (backend readiness delay) and
    ``backend_class`` (a ``LocalInfrastructure`` subclass to use instead).
    """

    def _factory(
        *,
        failing_tests: set[str] | None = None,
        ready_after_polls: int = 1,
        backend_class: type[LocalInfrastructure] = LocalInfrastructure,
    ) -> Harness:
        services = FakeServices()
        tests = StaticTestRunner(failing_tests)
        backend = backend_class(
            endpoint_template=ENDPOINT_TEMPLATE, ready_after_polls=ready_after_polls
        )
        verifier = HealthVerifier(
            services.client(),
            poll_interval=settings.health_poll_interval_seconds,
            jitter=0.0,
            consecutive_successes=settings.health_consecutive_successes,
            clock=clock,
            sleep=clock.sleep,
        )
        orchestrator = DeploymentOrchestrator(
            builder=ArtifactBuilder(tests, settings.build_log_dir, source_root=source_root),
            registry=FilesystemRegistry(
                settings.registry_path, retry_policy=fast_retry, sleep=clock.sleep
            ),
            provisioner=EnvironmentProvisioner(
                backend,
                timeout=settings.provision_timeout_seconds,
                poll_interval=settings.provision_poll_interval_seconds,
                retry_policy=fast_retry,
                clock=clock,
                sleep=clock.sleep,
            ),
            health_verifier=verifier,
            acceptance=SmokeAcceptanceSuite(
                verifier,
                deadline=settings.health_deadline_seconds,
                client=services.client(),
            ),
            ledger=RunLedger(settings.ledger_path),
            config=PipelineConfig(),
            settings=settings,
        )
        return Harness(
            orchestrator=orchestrator,
            backend=backend,
            clock=clock,
            tests=tests,
            services=services,
            source_root=source_root,
        )

    return _factory


@pytest.fixture
def harness(make_harness: Callable[..., Harness]) -> Harness:
    """A harness whose production environment already exists."""
    h = make_harness()
    h.orchestrator.bootstrap()
    return h
