"""Artifact builder: unit tests first, then a deterministic image.

The image is a tar archive of the service source tree with normalized
metadata (sorted members, zeroed mtimes and ownership), so unchanged source
always hashes to the same version. Container build mechanics are outside
the pipeline; the archive is the build context a registry would receive.
"""

from __future__ import annotations

import io
import logging
import shlex
import subprocess
import tarfile
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipline.core.errors import BuildError, ErrorKind
from shipline.core.hasher import content_address, version_from_digest
from shipline.models.artifacts import Artifact, TestResult
from shipline.models.services import Service

logger = logging.getLogger(__name__)

_EXCLUDED_DIRS = frozenset({"__pycache__", ".git", ".pytest_cache", ".mypy_cache", ".venv"})
_EXCLUDED_SUFFIXES = (".pyc", ".pyo")


@dataclass(frozen=True)
class TestOutcome:
    """Result of running a service's unit test suite."""

    __test__ = False  # not a pytest test class

    passed: bool
    output: str = ""


@runtime_checkable
class UnitTestRunner(Protocol):
    """Anything that can run a service's isolated unit tests."""

    def run(self, service: Service, source_path: Path) -> TestOutcome:
        ...


class SubprocessTestRunner:
    """Runs a test command in the service source directory.

    Parameters
    ----------
    command:
        Shell-style command line, e.g. ``"python -m pytest -q"``.
    timeout:
        Seconds before the run is killed and counted as a failure.
    """

    def __init__(self, command: str = "python -m pytest -q", timeout: float = 600.0) -> None:
        self._argv = shlex.split(command)
        self._timeout = timeout

    def run(self, service: Service, source_path: Path) -> TestOutcome:
        try:
            result = subprocess.run(
                self._argv,
                cwd=source_path,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            return TestOutcome(False, f"unit tests timed out after {exc.timeout}s")
        except OSError as exc:
            return TestOutcome(False, f"could not run {self._argv[0]!r}: {exc}")
        return TestOutcome(result.returncode == 0, result.stdout + result.stderr)


def iter_source_files(root: Path) -> Iterator[Path]:
    """Yield source files under *root* in sorted order, skipping caches."""
    for path in sorted(root.rglob("*")):
        rel_parts = path.relative_to(root).parts
        if any(part in _EXCLUDED_DIRS for part in rel_parts):
            continue
        if path.is_file() and not path.name.endswith(_EXCLUDED_SUFFIXES):
            yield path


def pack_source_tree(root: Path) -> bytes:
    """Pack *root* into a reproducible tar archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in iter_source_files(root):
            data = path.read_bytes()
            info = tarfile.TarInfo(name=path.relative_to(root).as_posix())
            info.size = len(data)
            info.mtime = 0
            info.mode = 0o644
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class ArtifactBuilder:
    """Builds one service at a time: unit tests, pack, hash.

    Parameters
    ----------
    test_runner:
        Runs the unit tests. A failure aborts the build.
    log_dir:
        Directory for per-build logs.
    source_root:
        Base path that relative ``Service.source_location`` values resolve
        against.
    """

    def __init__(
        self,
        test_runner: UnitTestRunner,
        log_dir: Path,
        *,
        source_root: Path = Path("."),
    ) -> None:
        self._test_runner = test_runner
        self._log_dir = Path(log_dir)
        self._source_root = Path(source_root)

    def source_path(self, service: Service) -> Path:
        return self._source_root / service.source_location

    def build(self, service: Service) -> Artifact:
        """Build *service*, raising ``BuildError`` on any failure."""
        source = self.source_path(service)
        if not source.is_dir():
            raise BuildError(
                f"Source tree not found for {service.name}: {source}",
                services=[service.name],
            )

        logger.info("Running unit tests for %s in %s", service.name, source)
        outcome = self._test_runner.run(service, source)
        if not outcome.passed:
            log_path = self._write_log(service.name, "failed", outcome.output)
            logger.error("Unit tests failed for %s (log: %s)", service.name, log_path)
            raise BuildError(
                f"Unit tests failed for {service.name} (log: {log_path})",
                kind=ErrorKind.TEST_FAILURE,
                services=[service.name],
            )

        image = pack_source_tree(source)
        address = content_address(image)
        version = version_from_digest(address)
        self._write_log(service.name, version, outcome.output)
        logger.info("Built %s@%s (%d bytes)", service.name, version, len(image))

        return Artifact(
            service_name=service.name,
            version=version,
            content_address=address,
            build_timestamp=datetime.now(timezone.utc),
            test_result=TestResult.PASSED,
            size_bytes=len(image),
            image=image,
        )

    def _write_log(self, service_name: str, label: str, output: str) -> Path:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        path = self._log_dir / f"{service_name}-{label}.log"
        path.write_text(output, encoding="utf-8")
        return path
