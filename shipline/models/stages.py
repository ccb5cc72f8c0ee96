"""Run and stage state models: deterministic transitions.

Two state machines live here: the per-run orchestration state (``RunState``)
and the status of each individual stage execution (``StageStatus``). Both
are enforced structurally by ``RunStateMachine`` through the transition
tables below.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from shipline.core.errors import ErrorKind


class RunState(str, Enum):
    """Orchestrator state of a single pipeline run."""

    IDLE = "idle"
    BUILDING = "building"
    PUBLISHING = "publishing"
    STAGING_UP = "staging_up"
    TESTING = "testing"
    STAGING_DOWN = "staging_down"
    AWAITING_PROMOTION = "awaiting_promotion"
    PRODUCTION_DEPLOYING = "production_deploying"
    PRODUCTION_VERIFYING = "production_verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_RUN_STATES: frozenset[RunState] = frozenset(
    {RunState.SUCCEEDED, RunState.FAILED, RunState.ABORTED}
)

# States from which an operator abort is honoured. Once production
# deployment starts the run must complete.
ABORTABLE_RUN_STATES: frozenset[RunState] = frozenset(
    {
        RunState.IDLE,
        RunState.BUILDING,
        RunState.PUBLISHING,
        RunState.STAGING_UP,
        RunState.TESTING,
        RunState.STAGING_DOWN,
        RunState.AWAITING_PROMOTION,
    }
)

# TESTING has a single exit: teardown always follows acceptance tests.
VALID_RUN_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.BUILDING, RunState.AWAITING_PROMOTION, RunState.ABORTED},
    RunState.BUILDING: {RunState.PUBLISHING, RunState.FAILED, RunState.ABORTED},
    RunState.PUBLISHING: {RunState.STAGING_UP, RunState.FAILED, RunState.ABORTED},
    RunState.STAGING_UP: {RunState.TESTING, RunState.FAILED, RunState.ABORTED},
    RunState.TESTING: {RunState.STAGING_DOWN},
    RunState.STAGING_DOWN: {
        RunState.AWAITING_PROMOTION,
        RunState.FAILED,
        RunState.ABORTED,
    },
    RunState.AWAITING_PROMOTION: {
        RunState.PRODUCTION_DEPLOYING,
        RunState.FAILED,
        RunState.ABORTED,
    },
    RunState.PRODUCTION_DEPLOYING: {RunState.PRODUCTION_VERIFYING, RunState.FAILED},
    RunState.PRODUCTION_VERIFYING: {RunState.SUCCEEDED, RunState.FAILED},
    RunState.SUCCEEDED: set(),  # terminal
    RunState.FAILED: set(),  # terminal
    RunState.ABORTED: set(),  # terminal
}


class StageName(str, Enum):
    BUILD = "build"
    PUBLISH = "publish"
    STAGING_DEPLOY = "staging_deploy"
    ACCEPTANCE_TEST = "acceptance_test"
    STAGING_TEARDOWN = "staging_teardown"
    PRODUCTION_DEPLOY = "production_deploy"
    PRODUCTION_VERIFY = "production_verify"


INTEGRATION_STAGES: list[StageName] = [
    StageName.BUILD,
    StageName.PUBLISH,
    StageName.STAGING_DEPLOY,
    StageName.ACCEPTANCE_TEST,
    StageName.STAGING_TEARDOWN,
    StageName.PRODUCTION_DEPLOY,
    StageName.PRODUCTION_VERIFY,
]

PROMOTION_STAGES: list[StageName] = [
    StageName.PRODUCTION_DEPLOY,
    StageName.PRODUCTION_VERIFY,
]


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


VALID_STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED},
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}


class StageError(BaseModel):
    """Which stage failed, for which services, and why."""

    model_config = ConfigDict(frozen=True)

    stage: StageName
    kind: ErrorKind
    message: str
    services: list[str] = []

    def describe(self) -> str:
        scope = f" [{', '.join(self.services)}]" if self.services else ""
        return f"{self.stage.value}{scope}: {self.kind.value}: {self.message}"


class StageExecution(BaseModel):
    """One ordered step of a pipeline run."""

    model_config = ConfigDict(frozen=True)

    name: StageName
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: StageError | None = None
