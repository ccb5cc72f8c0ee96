"""Acceptance tests run against a staging environment."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import httpx

from shipline.core.health import HealthVerifier
from shipline.models.environments import Environment
from shipline.models.services import Service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptanceResult:
    """Outcome of an acceptance suite: passed, plus one line per failure."""

    passed: bool
    failures: list[str] = field(default_factory=list)

    @property
    def failing_services(self) -> list[str]:
        return sorted({f.split(":", 1)[0] for f in self.failures})


@runtime_checkable
class AcceptanceSuite(Protocol):
    def run(self, environment: Environment, services: list[Service]) -> AcceptanceResult:
        ...


class SmokeAcceptanceSuite:
    """Health-gate every service, then GET any extra paths expecting 200.

    Parameters
    ----------
    verifier:
        Health verifier used for the liveness gate.
    deadline:
        Seconds allowed for staging to become healthy.
    extra_paths:
        Optional ``service -> [path, ...]`` smoke requests, e.g.
        ``{"product": ["/products"]}``.
    client:
        ``httpx.Client`` for the extra requests.
    """

    def __init__(
        self,
        verifier: HealthVerifier,
        *,
        deadline: float = 120.0,
        extra_paths: dict[str, list[str]] | None = None,
        client: httpx.Client | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        self._verifier = verifier
        self._deadline = deadline
        self._extra_paths = extra_paths or {}
        self._client = client or httpx.Client()
        self._timeout = request_timeout

    def close(self) -> None:
        self._client.close()

    def run(self, environment: Environment, services: list[Service]) -> AcceptanceResult:
        report = self._verifier.wait_healthy(environment, services, self._deadline)
        failures = [
            f"{name}: not healthy ({report.services[name].last_error or 'no streak'})"
            for name in report.failing
        ]

        for service in services:
            if service.name in report.failing:
                continue
            base = environment.bindings[service.name].rstrip("/")
            for path in self._extra_paths.get(service.name, []):
                try:
                    response = self._client.get(base + path, timeout=self._timeout)
                except httpx.HTTPError as exc:
                    failures.append(f"{service.name}: GET {path} raised {exc}")
                    continue
                if response.status_code != 200:
                    failures.append(
                        f"{service.name}: GET {path} returned {response.status_code}"
                    )

        if failures:
            logger.warning(
                "Acceptance failed on %s: %s", environment.identifier, "; ".join(failures)
            )
        else:
            logger.info("Acceptance passed on %s", environment.identifier)
        return AcceptanceResult(passed=not failures, failures=failures)
