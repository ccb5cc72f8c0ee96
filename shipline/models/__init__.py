"""Shipline data models: all Pydantic v2, all frozen (immutable)."""

from shipline.models.artifacts import Artifact, ImageRef, TestResult
from shipline.models.config import PipelineConfig
from shipline.models.environments import (
    Environment,
    EnvironmentKind,
    EnvironmentSpec,
    LifecycleState,
    ResourceState,
    ServiceDeployment,
)
from shipline.models.health import HealthReport, HealthStatus, ServiceHealth
from shipline.models.ledger import LedgerEntry
from shipline.models.runs import (
    EventKind,
    PipelineRun,
    RunLifecycle,
    RunStatus,
    TriggerEvent,
    TriggerKind,
)
from shipline.models.services import DEFAULT_SERVICES, Service
from shipline.models.stages import (
    VALID_RUN_TRANSITIONS,
    VALID_STAGE_TRANSITIONS,
    RunState,
    StageError,
    StageExecution,
    StageName,
    StageStatus,
)

__all__ = [
    # services
    "Service",
    "DEFAULT_SERVICES",
    # artifacts
    "Artifact",
    "ImageRef",
    "TestResult",
    # environments
    "Environment",
    "EnvironmentKind",
    "EnvironmentSpec",
    "LifecycleState",
    "ResourceState",
    "ServiceDeployment",
    # health
    "HealthReport",
    "HealthStatus",
    "ServiceHealth",
    # stages
    "RunState",
    "StageName",
    "StageStatus",
    "StageError",
    "StageExecution",
    "VALID_RUN_TRANSITIONS",
    "VALID_STAGE_TRANSITIONS",
    # runs
    "EventKind",
    "PipelineRun",
    "RunLifecycle",
    "RunStatus",
    "TriggerEvent",
    "TriggerKind",
    # ledger
    "LedgerEntry",
    # config
    "PipelineConfig",
]
