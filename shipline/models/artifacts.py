"""Build artifact models (immutable once created)."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TestResult(str, Enum):
    """Outcome of the unit test suite run before packaging."""

    __test__ = False  # not a pytest test class

    PASSED = "passed"
    FAILED = "failed"


class Artifact(BaseModel):
    """A versioned, content-addressed build output for one service.

    ``version`` is derived from the image digest, so rebuilding unchanged
    source yields the same version. The image bytes travel with the model
    but are excluded from serialization.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str
    version: str
    content_address: str  # "sha256:<hex>"
    build_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    test_result: TestResult = TestResult.PASSED
    size_bytes: int = 0
    image: bytes = Field(default=b"", exclude=True, repr=False)

    @property
    def ref(self) -> str:
        """Ledger reference: ``service@version``."""
        return format_ref(self.service_name, self.version)


class ImageRef(BaseModel):
    """A pullable reference to a published artifact."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    version: str
    reference: str  # "<registry-host>/<service>:<version>"
    digest: str  # "sha256:<hex>"


def format_ref(service_name: str, version: str) -> str:
    """Format a ``service@version`` reference string."""
    return f"{service_name}@{version}"


def parse_ref(ref: str) -> tuple[str, str]:
    """Split a ``service@version`` reference into its parts."""
    service_name, sep, version = ref.partition("@")
    if not sep or not service_name or not version:
        raise ValueError(f"Malformed artifact reference: {ref!r}")
    return service_name, version
