"""Local infrastructure backend.

Keeps environment records in memory, optionally mirrored to a JSON file so
that separate CLI invocations (bootstrap, trigger, promote) share state.
Service endpoints are rendered from a URL template, by default
``http://localhost:{port}``, which matches services started locally with
their standard ports.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from shipline.core.errors import ProvisionError
from shipline.models.environments import (
    Environment,
    EnvironmentKind,
    EnvironmentSpec,
    LifecycleState,
    ResourceState,
    ServiceDeployment,
)

logger = logging.getLogger(__name__)


class LocalInfrastructure:
    """In-process ``InfrastructureBackend``.

    Parameters
    ----------
    endpoint_template:
        Format string for service endpoints. Available keys: ``service``,
        ``port``, ``environment``.
    state_path:
        Optional JSON file used to persist environment records.
    ready_after_polls:
        Number of ``poll`` calls that report PENDING before READY.
    """

    def __init__(
        self,
        *,
        endpoint_template: str = "http://localhost:{port}",
        state_path: Path | None = None,
        ready_after_polls: int = 0,
    ) -> None:
        self._template = endpoint_template
        self._state_path = Path(state_path) if state_path is not None else None
        self._ready_after_polls = ready_after_polls
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._state_path is None or not self._state_path.exists():
            return {}
        return json.loads(self._state_path.read_text(encoding="utf-8"))

    def _save(self) -> None:
        if self._state_path is None:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._state_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._records, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._state_path)

    def _endpoint(self, environment_id: str, name: str, port: int) -> str:
        return self._template.format(service=name, port=port, environment=environment_id)

    # ------------------------------------------------------------------
    # InfrastructureBackend
    # ------------------------------------------------------------------

    def begin_create(
        self, environment_id: str, kind: EnvironmentKind, spec: EnvironmentSpec
    ) -> None:
        with self._lock:
            if environment_id in self._records:
                raise ProvisionError(f"Environment {environment_id} already exists")
            self._records[environment_id] = {
                "kind": kind.value,
                "network_ref": f"net-{environment_id}-{uuid.uuid4().hex[:6]}" if spec.network else "",
                "databases": list(spec.databases),
                "services": {
                    s.name: {"version": s.version, "image": s.image, "port": s.port}
                    for s in spec.services
                },
                "pending_polls": self._ready_after_polls,
            }
            self._save()
        logger.debug("local: began creating %s", environment_id)

    def poll(self, environment_id: str) -> ResourceState:
        with self._lock:
            record = self._records.get(environment_id)
            if record is None:
                return ResourceState.FAILED
            if record["pending_polls"] > 0:
                record["pending_polls"] -= 1
                self._save()
                return ResourceState.PENDING
            return ResourceState.READY

    def describe(self, environment_id: str) -> Environment | None:
        with self._lock:
            record = self._records.get(environment_id)
            if record is None:
                return None
            services = record["services"]
            return Environment(
                kind=EnvironmentKind(record["kind"]),
                identifier=environment_id,
                network_ref=record["network_ref"],
                bindings={
                    name: self._endpoint(environment_id, name, svc["port"])
                    for name, svc in services.items()
                },
                versions={
                    name: svc["version"]
                    for name, svc in services.items()
                    if svc["version"]
                },
                lifecycle_state=(
                    LifecycleState.READY
                    if record["pending_polls"] == 0
                    else LifecycleState.PROVISIONING
                ),
            )

    def deploy_service(self, environment_id: str, deployment: ServiceDeployment) -> None:
        with self._lock:
            record = self._records.get(environment_id)
            if record is None:
                raise ProvisionError(f"Environment {environment_id} does not exist")
            record["services"][deployment.name] = {
                "version": deployment.version,
                "image": deployment.image,
                "port": deployment.port,
            }
            self._save()
        logger.debug("local: %s now runs %s@%s", environment_id, deployment.name, deployment.version)

    def delete(self, environment_id: str) -> None:
        with self._lock:
            self._records.pop(environment_id, None)
            self._save()
        logger.debug("local: deleted %s", environment_id)

    def environment_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)
