"""Health verifier: debounced liveness polling with a hard deadline.

Each round polls every service that is not yet healthy. A service is
healthy after ``consecutive_successes`` 200 responses in a row; any failure
resets its counter. Sleeps between rounds are jittered and clipped to the
deadline. Every phase of a request (connect, write, each read, pool) is
clipped to the remaining budget and only the status line and headers are
awaited, never the body. A response that arrives after the deadline counts
as a failure, so a slow endpoint cannot turn into a late success.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable

import httpx

from shipline.models.environments import Environment
from shipline.models.health import HealthReport, HealthStatus, ServiceHealth
from shipline.models.services import Service

logger = logging.getLogger(__name__)


class HealthVerifier:
    """Polls ``GET <endpoint><health path>`` for a set of services.

    Parameters
    ----------
    client:
        ``httpx.Client`` used for requests. One is created if omitted.
    poll_interval:
        Seconds between polling rounds.
    jitter:
        Upper bound of uniform random seconds added to each interval.
    consecutive_successes:
        Number of successful checks in a row required per service.
    request_timeout:
        Upper bound on a single request.
    clock, sleep, rng:
        Injectable time and randomness sources.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        poll_interval: float = 5.0,
        jitter: float = 1.0,
        consecutive_successes: int = 3,
        request_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if consecutive_successes < 1:
            raise ValueError("consecutive_successes must be at least 1")
        self._client = client or httpx.Client()
        self._interval = poll_interval
        self._jitter = jitter
        self._required = consecutive_successes
        self._request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def close(self) -> None:
        self._client.close()

    def check_once(
        self, url: str, timeout: float, *, respond_by: float | None = None
    ) -> str | None:
        """Perform one liveness check. Returns None on success, else the reason.

        *respond_by* is a ``clock`` reading; a response seen later than that
        is reported as a failure.
        """
        try:
            with self._client.stream("GET", url, timeout=httpx.Timeout(timeout)) as response:
                status = response.status_code
        except httpx.HTTPError as exc:
            return f"{type(exc).__name__}: {exc}"
        if respond_by is not None and self._clock() > respond_by:
            return "no response before the deadline"
        if status != 200:
            return f"HTTP {status}"
        return None

    def wait_healthy(
        self,
        environment: Environment,
        services: Iterable[Service],
        deadline: float,
    ) -> HealthReport:
        """Poll until every service is healthy or *deadline* seconds elapse."""
        started = self._clock()
        expires = started + deadline
        required = list(services)

        successes = {s.name: 0 for s in required}
        checks = {s.name: 0 for s in required}
        errors: dict[str, str | None] = {s.name: None for s in required}
        urls: dict[str, str] = {}
        for service in required:
            base = environment.bindings.get(service.name)
            if base is None:
                errors[service.name] = f"no endpoint bound in {environment.identifier}"
            else:
                urls[service.name] = base.rstrip("/") + service.health_endpoint

        def pending() -> list[str]:
            return [
                name
                for name in urls
                if successes[name] < self._required
            ]

        while pending():
            for name in pending():
                remaining = expires - self._clock()
                if remaining <= 0:
                    break
                reason = self.check_once(
                    urls[name],
                    timeout=min(self._request_timeout, remaining),
                    respond_by=expires,
                )
                checks[name] += 1
                if reason is None:
                    successes[name] += 1
                    errors[name] = None
                else:
                    if successes[name]:
                        logger.info("%s health streak reset: %s", name, reason)
                    successes[name] = 0
                    errors[name] = reason

            if not pending():
                break
            remaining = expires - self._clock()
            if remaining <= 0:
                break
            pause = self._interval + self._rng.uniform(0, self._jitter)
            self._sleep(min(pause, remaining))

        service_health = {
            s.name: ServiceHealth(
                service=s.name,
                status=(
                    HealthStatus.HEALTHY
                    if successes[s.name] >= self._required
                    else HealthStatus.DEGRADED
                ),
                consecutive_successes=successes[s.name],
                checks=checks[s.name],
                last_error=errors[s.name],
            )
            for s in required
        }
        overall = (
            HealthStatus.HEALTHY
            if all(h.status == HealthStatus.HEALTHY for h in service_health.values())
            else HealthStatus.DEGRADED
        )
        report = HealthReport(
            status=overall,
            services=service_health,
            elapsed_seconds=self._clock() - started,
        )
        if report.healthy:
            logger.info(
                "%s healthy after %.1fs", environment.identifier, report.elapsed_seconds
            )
        else:
            logger.warning(
                "%s degraded after %.1fs; failing: %s",
                environment.identifier,
                report.elapsed_seconds,
                ", ".join(report.failing),
            )
        return report
