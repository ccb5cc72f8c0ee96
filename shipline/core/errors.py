"""Pipeline error taxonomy.

Every error carries an ``ErrorKind`` (reported on the failed stage) and a
``retryable`` flag. Components retry retryable errors locally with bounded
backoff; the orchestrator never retries a failed stage.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TEST_FAILURE = "test_failure"
    BUILD_ERROR = "build_error"
    REGISTRY_ERROR = "registry_error"
    NOT_FOUND = "not_found"
    PROVISION_ERROR = "provision_error"
    ACCEPTANCE_FAILURE = "acceptance_failure"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    PROMOTION_REJECTED = "promotion_rejected"
    ABORTED = "aborted"
    INTERNAL = "internal"


class PipelineError(RuntimeError):
    """Base class for all pipeline failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        services: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.services = list(services or [])


class BuildError(PipelineError):
    """Raised when a service cannot be built. Terminal for the run."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.BUILD_ERROR,
        services: list[str] | None = None,
    ) -> None:
        super().__init__(message, retryable=False, services=services)
        self.kind = kind


class RegistryError(PipelineError):
    """Raised on registry failures. Transient ones are retried locally."""

    kind = ErrorKind.REGISTRY_ERROR


class NotFoundError(RegistryError):
    """Raised when pulling a (service, version) that was never pushed."""

    kind = ErrorKind.NOT_FOUND


class ProvisionError(PipelineError):
    """Raised on environment create/destroy/update failures."""

    kind = ErrorKind.PROVISION_ERROR


class AcceptanceError(PipelineError):
    """Raised when acceptance tests against staging fail."""

    kind = ErrorKind.ACCEPTANCE_FAILURE


class HealthCheckTimeout(PipelineError):
    """Raised when production did not become healthy within the deadline.

    Non-destructive: production is left at its last-updated state.
    """

    kind = ErrorKind.HEALTH_CHECK_TIMEOUT


class PromotionRejected(PipelineError):
    """Raised when promotion references artifacts that never passed staging."""

    kind = ErrorKind.PROMOTION_REJECTED


class RunAborted(PipelineError):
    """Raised at a stage boundary after an operator abort."""

    kind = ErrorKind.ABORTED


class RunNotFoundError(KeyError):
    """Raised when a run id is unknown to the registry."""
