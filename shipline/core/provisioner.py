"""Environment provisioner: create, update and destroy runtime environments.

The provisioner owns the lifecycle bookkeeping (Provisioning, Ready,
Degraded, Tearing Down, Destroyed) and delegates the actual resources to an
``InfrastructureBackend``. Creation is synchronous for the caller: it polls
the backend until the environment is ready, and on failure or timeout it
destroys whatever it started before raising, so a failed ``create`` never
leaves a partially built environment behind.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from shipline.core.errors import ProvisionError
from shipline.core.retry import RetryPolicy, call_with_retry
from shipline.models.environments import (
    Environment,
    EnvironmentKind,
    EnvironmentSpec,
    LifecycleState,
    ResourceState,
    ServiceDeployment,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class InfrastructureBackend(Protocol):
    """Opaque resource API: network, compute and database instances.

    Implementations raise ``ProvisionError``; transient failures must set
    ``retryable=True`` so the provisioner can back off and retry.
    """

    def begin_create(
        self, environment_id: str, kind: EnvironmentKind, spec: EnvironmentSpec
    ) -> None:
        """Start creating network, databases and services. May return early."""
        ...

    def poll(self, environment_id: str) -> ResourceState:
        """Report creation progress."""
        ...

    def describe(self, environment_id: str) -> Environment | None:
        """Return the environment as the backend sees it, or None if absent."""
        ...

    def deploy_service(self, environment_id: str, deployment: ServiceDeployment) -> None:
        """Replace one service's running image, leaving network and data alone."""
        ...

    def delete(self, environment_id: str) -> None:
        """Delete every resource of the environment. Deleting twice is fine."""
        ...


class EnvironmentProvisioner:
    """Lifecycle manager for staging and production environments.

    Parameters
    ----------
    backend:
        The infrastructure backend that owns the real resources.
    timeout:
        Seconds ``create`` waits for the backend to report READY.
    poll_interval:
        Seconds between readiness polls.
    retry_policy:
        Backoff bounds for transient backend errors.
    clock, sleep:
        Time sources, injectable for tests.
    """

    def __init__(
        self,
        backend: InfrastructureBackend,
        *,
        timeout: float = 900.0,
        poll_interval: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._environments: dict[str, Environment] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, environment_id: str) -> Environment | None:
        """Return the known environment, adopting it from the backend if needed."""
        with self._lock:
            known = self._environments.get(environment_id)
        if known is not None:
            return known
        described = self._backend.describe(environment_id)
        if described is not None:
            self._store(described)
        return described

    def environments(self) -> list[Environment]:
        with self._lock:
            return list(self._environments.values())

    def _store(self, environment: Environment) -> Environment:
        with self._lock:
            self._environments[environment.identifier] = environment
        return environment

    def _set_state(self, environment_id: str, state: LifecycleState) -> None:
        with self._lock:
            current = self._environments.get(environment_id)
            if current is not None:
                self._environments[environment_id] = current.model_copy(
                    update={"lifecycle_state": state}
                )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self, kind: EnvironmentKind, spec: EnvironmentSpec, environment_id: str
    ) -> Environment:
        """Create an environment and wait until it is ready.

        Raises ``ProvisionError`` after cleaning up on failure or timeout.
        """
        existing = self.get(environment_id)
        if existing is not None and existing.lifecycle_state != LifecycleState.DESTROYED:
            raise ProvisionError(
                f"Environment {environment_id} already exists "
                f"({existing.lifecycle_state.value})"
            )

        self._store(Environment(kind=kind, identifier=environment_id))
        logger.info(
            "Provisioning %s environment %s (%d services)",
            kind.value,
            environment_id,
            len(spec.services),
        )

        try:
            call_with_retry(
                lambda: self._backend.begin_create(environment_id, kind, spec),
                self._retry,
                description=f"create {environment_id}",
                sleep=self._sleep,
            )
            self._wait_ready(environment_id)
            described = self._backend.describe(environment_id)
            if described is None:
                raise ProvisionError(
                    f"Environment {environment_id} vanished after reporting ready"
                )
        except ProvisionError:
            self._cleanup_failed_create(environment_id)
            raise

        ready = described.model_copy(
            update={"kind": kind, "lifecycle_state": LifecycleState.READY}
        )
        logger.info("Environment %s is ready: %s", environment_id, ready.bindings)
        return self._store(ready)

    def _wait_ready(self, environment_id: str) -> None:
        deadline = self._clock() + self._timeout
        while True:
            state = call_with_retry(
                lambda: self._backend.poll(environment_id),
                self._retry,
                description=f"poll {environment_id}",
                sleep=self._sleep,
            )
            if state == ResourceState.READY:
                return
            if state == ResourceState.FAILED:
                raise ProvisionError(f"Backend reported failure creating {environment_id}")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ProvisionError(
                    f"Timed out after {self._timeout:.0f}s waiting for {environment_id}"
                )
            self._sleep(min(self._poll_interval, remaining))

    def _cleanup_failed_create(self, environment_id: str) -> None:
        logger.warning("Cleaning up partially created environment %s", environment_id)
        try:
            self.destroy(environment_id)
        except ProvisionError as exc:
            logger.warning("Cleanup of %s failed: %s", environment_id, exc)

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def destroy(self, environment_id: str) -> None:
        """Tear an environment down. Raises ``ProvisionError`` on failure."""
        if self.get(environment_id) is None:
            raise ProvisionError(f"Unknown environment: {environment_id}")

        self._set_state(environment_id, LifecycleState.TEARING_DOWN)
        logger.info("Destroying environment %s", environment_id)
        call_with_retry(
            lambda: self._backend.delete(environment_id),
            self._retry,
            description=f"destroy {environment_id}",
            sleep=self._sleep,
        )
        self._set_state(environment_id, LifecycleState.DESTROYED)
        logger.info("Environment %s destroyed", environment_id)

    # ------------------------------------------------------------------
    # Update (production rollout)
    # ------------------------------------------------------------------

    def update(
        self, environment_id: str, deployments: list[ServiceDeployment]
    ) -> Environment:
        """Roll new versions onto an existing environment's services.

        Services already running the target version are skipped, so
        retrying an update is a no-op once it has been applied.
        """
        environment = self.get(environment_id)
        if environment is None or environment.lifecycle_state in (
            LifecycleState.TEARING_DOWN,
            LifecycleState.DESTROYED,
        ):
            raise ProvisionError(
                f"Environment {environment_id} is not provisioned; cannot update"
            )

        versions = dict(environment.versions)
        try:
            for deployment in deployments:
                if versions.get(deployment.name) == deployment.version:
                    logger.info(
                        "%s already runs %s@%s; skipping",
                        environment_id,
                        deployment.name,
                        deployment.version,
                    )
                    continue
                logger.info(
                    "Updating %s: %s %s -> %s",
                    environment_id,
                    deployment.name,
                    versions.get(deployment.name, "<none>"),
                    deployment.version,
                )
                call_with_retry(
                    lambda d=deployment: self._backend.deploy_service(environment_id, d),
                    self._retry,
                    description=f"deploy {deployment.name} to {environment_id}",
                    sleep=self._sleep,
                )
                versions[deployment.name] = deployment.version
        except ProvisionError as exc:
            self._store(
                environment.model_copy(
                    update={
                        "versions": versions,
                        "lifecycle_state": LifecycleState.DEGRADED,
                    }
                )
            )
            exc.services = exc.services or [deployment.name]
            raise

        described = self._backend.describe(environment_id)
        bindings = described.bindings if described is not None else environment.bindings
        return self._store(
            environment.model_copy(
                update={
                    "versions": versions,
                    "bindings": bindings,
                    "lifecycle_state": LifecycleState.READY,
                }
            )
        )

    def mark_degraded(self, environment_id: str) -> None:
        """Record that an environment failed post-update verification."""
        self._set_state(environment_id, LifecycleState.DEGRADED)
