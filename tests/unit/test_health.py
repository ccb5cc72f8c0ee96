"""Tests for the HealthVerifier: debounced, deadline-bounded polling."""

from __future__ import annotations

import httpx
import pytest

from shipline.core.health import HealthVerifier
from shipline.models.environments import Environment, EnvironmentKind
from shipline.models.health import HealthStatus
from shipline.models.services import DEFAULT_SERVICES

ENV = Environment(
    kind=EnvironmentKind.PRODUCTION,
    identifier="prod",
    bindings={s.name: f"http://{s.name}.prod.test" for s in DEFAULT_SERVICES},
)


def make_verifier(handler, clock, **kwargs) -> HealthVerifier:
    params = {"poll_interval": 5.0, "jitter": 0.0, "consecutive_successes": 3}
    params.update(kwargs)
    return HealthVerifier(
        httpx.Client(transport=httpx.MockTransport(handler)),
        clock=clock,
        sleep=clock.sleep,
        **params,
    )


class TestWaitHealthy:
    def test_all_healthy_after_consecutive_successes(self, clock, fake_services):
        verifier = make_verifier(fake_services.handler, clock)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES, deadline=60)
        assert report.healthy
        assert all(h.consecutive_successes == 3 for h in report.services.values())
        # three rounds, two pauses between them
        assert clock.sleeps == [5.0, 5.0]
        assert all(url.endswith("/health") for url in fake_services.requests)

    def test_failure_resets_the_streak(self, clock):
        responses = iter([200, 503, 200, 200, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(responses))

        verifier = make_verifier(handler, clock)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES[:1], deadline=60)
        assert report.healthy
        assert report.services["product"].checks == 5

    def test_unhealthy_service_is_reported_by_deadline(self, clock, fake_services):
        fake_services.unhealthy.add("order")
        verifier = make_verifier(fake_services.handler, clock)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES, deadline=30)
        assert not report.healthy
        assert report.status == HealthStatus.DEGRADED
        assert report.failing == ["order"]
        assert report.services["order"].last_error == "HTTP 503"
        assert report.services["product"].status == HealthStatus.HEALTHY

    @pytest.mark.parametrize("deadline", [7.0, 30.0, 61.5])
    def test_returns_within_deadline_plus_interval(self, clock, fake_services, deadline):
        fake_services.unhealthy.update(s.name for s in DEFAULT_SERVICES)
        verifier = make_verifier(fake_services.handler, clock, jitter=2.0)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES, deadline=deadline)
        assert not report.healthy
        assert clock.now <= deadline + 5.0
        assert report.elapsed_seconds == pytest.approx(clock.now)

    def test_transport_errors_count_as_failures(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        verifier = make_verifier(handler, clock)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES[:1], deadline=10)
        assert report.failing == ["product"]
        assert "ConnectError" in report.services["product"].last_error

    def test_unbound_service_is_degraded(self, clock, fake_services):
        env = ENV.model_copy(update={"bindings": {"product": "http://product.prod.test"}})
        verifier = make_verifier(fake_services.handler, clock)
        report = verifier.wait_healthy(env, DEFAULT_SERVICES, deadline=10)
        assert report.failing == ["customer", "order"]
        assert "no endpoint" in report.services["order"].last_error

    def test_request_timeout_is_clipped_to_remaining_budget(self, clock):
        seen: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.extensions["timeout"]["read"])
            return httpx.Response(503)

        verifier = make_verifier(handler, clock, request_timeout=5.0)
        verifier.wait_healthy(ENV, DEFAULT_SERVICES[:1], deadline=7.0)
        assert seen[0] == 5.0
        assert seen[-1] == pytest.approx(2.0)

    def test_every_timeout_phase_is_clipped(self, clock):
        seen: list[dict[str, float]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.extensions["timeout"])
            return httpx.Response(503)

        verifier = make_verifier(handler, clock, request_timeout=5.0)
        verifier.wait_healthy(ENV, DEFAULT_SERVICES[:1], deadline=7.0)
        assert set(seen[-1]) == {"connect", "read", "write", "pool"}
        assert all(value == pytest.approx(2.0) for value in seen[-1].values())

    def test_response_after_deadline_is_a_failure(self, clock):
        slow = iter([0.0, 8.0])

        def handler(request: httpx.Request) -> httpx.Response:
            clock.now += next(slow, 0.0)
            return httpx.Response(200)

        verifier = make_verifier(handler, clock, consecutive_successes=2)
        report = verifier.wait_healthy(ENV, DEFAULT_SERVICES[:1], deadline=6.0)
        assert not report.healthy
        assert report.services["product"].checks == 2
        assert report.services["product"].last_error == "no response before the deadline"

    def test_close_closes_the_client(self, clock, fake_services):
        client = fake_services.client()
        HealthVerifier(client, clock=clock, sleep=clock.sleep).close()
        assert client.is_closed

    def test_rejects_zero_consecutive_successes(self):
        with pytest.raises(ValueError):
            HealthVerifier(consecutive_successes=0)
