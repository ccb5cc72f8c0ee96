"""Pipeline run and trigger models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shipline.core.errors import ErrorKind
from shipline.models.stages import (
    TERMINAL_RUN_STATES,
    RunState,
    StageError,
    StageExecution,
    StageName,
)


class EventKind(str, Enum):
    PUSH = "push"
    MERGE = "merge"


class TriggerEvent(BaseModel):
    """Webhook-style event from source control."""

    model_config = ConfigDict(frozen=True)

    branch: str
    commit: str
    event_kind: EventKind


class TriggerKind(str, Enum):
    PUSH_TO_INTEGRATION = "push-to-integration-branch"
    PROMOTION_TO_MAIN = "promotion-to-main"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class RunLifecycle(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    TERMINAL = "terminal"


# Exit codes for the pipeline runner, keyed by failure kind.
EXIT_SUCCESS = 0
EXIT_BUILD_OR_TEST = 1
EXIT_PROVISION = 2
EXIT_HEALTH = 3

_EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.PROVISION_ERROR: EXIT_PROVISION,
    ErrorKind.HEALTH_CHECK_TIMEOUT: EXIT_HEALTH,
}


def exit_code_for(kind: ErrorKind) -> int:
    """Exit code of a run that failed with *kind*."""
    return _EXIT_CODES.get(kind, EXIT_BUILD_OR_TEST)


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"run-{ts}-{uuid.uuid4().hex[:6]}"


class PipelineRun(BaseModel):
    """Snapshot of a pipeline run.

    Runs are immutable snapshots; the ``RunRegistry`` swaps in a new copy on
    every state change.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=new_run_id)
    trigger_kind: TriggerKind = TriggerKind.PUSH_TO_INTEGRATION
    commit: str = ""
    state: RunState = RunState.IDLE
    status: RunStatus = RunStatus.RUNNING
    stages: list[StageExecution] = []
    artifacts: dict[str, str] = {}  # service -> version
    staging_environment_id: str | None = None
    failure: StageError | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    @property
    def lifecycle(self) -> RunLifecycle:
        if self.state in TERMINAL_RUN_STATES:
            return RunLifecycle.TERMINAL
        if self.state == RunState.IDLE:
            return RunLifecycle.CREATED
        return RunLifecycle.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle == RunLifecycle.TERMINAL

    @property
    def exit_code(self) -> int:
        """Runner exit code: 0 ok, 1 build/test, 2 provision, 3 health."""
        if self.status == RunStatus.FAILED and self.failure is not None:
            return exit_code_for(self.failure.kind)
        if self.status in (RunStatus.FAILED, RunStatus.ABORTED):
            return EXIT_BUILD_OR_TEST
        return EXIT_SUCCESS

    def stage(self, name: StageName) -> StageExecution | None:
        for execution in self.stages:
            if execution.name == name:
                return execution
        return None
