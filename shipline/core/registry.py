"""Artifact registry client: immutable, keyed by (service, version).

Storage layout: {base_path}/{service}/{version}/image.tar + artifact.json
No delete method: a published version is never replaced.

A push is staged in a hidden sibling directory and moved into place with a
single rename, so readers see an artifact either absent or fully present.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipline.core.errors import NotFoundError, RegistryError
from shipline.core.hasher import content_address
from shipline.core.retry import RetryPolicy, call_with_retry
from shipline.models.artifacts import Artifact, ImageRef

logger = logging.getLogger(__name__)

_IMAGE_FILE = "image.tar"
_METADATA_FILE = "artifact.json"


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Registry operations the pipeline depends on."""

    def push(self, artifact: Artifact) -> None:
        ...

    def exists(self, service_name: str, version: str) -> bool:
        ...

    def pull(self, service_name: str, version: str) -> ImageRef:
        ...


class FilesystemRegistry:
    """Directory-backed registry with idempotent pushes.

    Parameters
    ----------
    base_path:
        Root directory for stored artifacts.
    registry_host:
        Host used to form pullable references (``host/service:version``).
    retry_policy:
        Bounds for retrying transient I/O failures.
    """

    def __init__(
        self,
        base_path: Path,
        *,
        registry_host: str = "localhost:5000",
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._host = registry_host
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _version_dir(self, service_name: str, version: str) -> Path:
        return self._base / service_name / version

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(self, artifact: Artifact) -> None:
        """Publish *artifact*. Pushing an identical version is a no-op."""
        call_with_retry(
            lambda: self._push_once(artifact),
            self._retry,
            description=f"push {artifact.ref}",
            sleep=self._sleep,
        )

    def _push_once(self, artifact: Artifact) -> None:
        target = self._version_dir(artifact.service_name, artifact.version)
        if target.exists():
            self._check_same_content(artifact, target)
            logger.info("%s already published; push is a no-op", artifact.ref)
            return

        if not artifact.image:
            raise RegistryError(
                f"Artifact {artifact.ref} carries no image payload",
                services=[artifact.service_name],
            )
        if content_address(artifact.image) != artifact.content_address:
            raise RegistryError(
                f"Artifact {artifact.ref} payload does not match its digest",
                services=[artifact.service_name],
            )

        staging = target.parent / f".incoming-{artifact.version}-{uuid.uuid4().hex[:8]}"
        try:
            staging.mkdir(parents=True)
            (staging / _IMAGE_FILE).write_bytes(artifact.image)
            (staging / _METADATA_FILE).write_text(
                artifact.model_dump_json(), encoding="utf-8"
            )
            try:
                os.rename(staging, target)
            except OSError:
                # A concurrent push of the same version won the rename.
                if not target.exists():
                    raise
                self._check_same_content(artifact, target)
                logger.info("%s published concurrently; push is a no-op", artifact.ref)
                return
        except PermissionError as exc:
            raise RegistryError(
                f"Permission denied publishing {artifact.ref}: {exc}",
                services=[artifact.service_name],
            ) from exc
        except OSError as exc:
            raise RegistryError(
                f"I/O error publishing {artifact.ref}: {exc}",
                retryable=True,
                services=[artifact.service_name],
            ) from exc
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Published %s (%s)", artifact.ref, artifact.content_address)

    def _check_same_content(self, artifact: Artifact, target: Path) -> None:
        stored = self._read_metadata(target)
        if stored.get("content_address") != artifact.content_address:
            raise RegistryError(
                f"Version {artifact.ref} already exists with different content "
                f"({stored.get('content_address')} != {artifact.content_address})",
                services=[artifact.service_name],
            )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def exists(self, service_name: str, version: str) -> bool:
        return (self._version_dir(service_name, version) / _METADATA_FILE).exists()

    def pull(self, service_name: str, version: str) -> ImageRef:
        """Resolve a published artifact, verifying its stored digest."""
        target = self._version_dir(service_name, version)
        if not self.exists(service_name, version):
            raise NotFoundError(
                f"Artifact not found: {service_name}@{version}",
                services=[service_name],
            )
        metadata = self._read_metadata(target)
        digest = content_address((target / _IMAGE_FILE).read_bytes())
        if digest != metadata.get("content_address"):
            raise RegistryError(
                f"Stored artifact {service_name}@{version} failed integrity check",
                services=[service_name],
            )
        return ImageRef(
            service_name=service_name,
            version=version,
            reference=f"{self._host}/{service_name}:{version}",
            digest=digest,
        )

    def versions(self, service_name: str) -> list[str]:
        """Return all published versions of a service."""
        service_dir = self._base / service_name
        if not service_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in service_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    @staticmethod
    def _read_metadata(target: Path) -> dict:
        return json.loads((target / _METADATA_FILE).read_text(encoding="utf-8"))
