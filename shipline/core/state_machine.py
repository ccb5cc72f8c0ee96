"""Run state machine: validated transitions, recorded in the run ledger.

Enforces:
- Valid run-state transitions only (VALID_RUN_TRANSITIONS)
- Valid stage-status transitions only (VALID_STAGE_TRANSITIONS)
- Every transition recorded in the run ledger before it takes effect

Runs are immutable snapshots: each method takes a ``PipelineRun`` and
returns the updated copy.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from shipline.core.run_ledger import RunLedger
from shipline.models.ledger import RUN_SUBJECT, LedgerEntry
from shipline.models.runs import PipelineRun, RunStatus
from shipline.models.stages import (
    VALID_RUN_TRANSITIONS,
    VALID_STAGE_TRANSITIONS,
    RunState,
    StageError,
    StageExecution,
    StageName,
    StageStatus,
)

logger = logging.getLogger(__name__)

_STATUS_FOR_STATE: dict[RunState, RunStatus] = {
    RunState.SUCCEEDED: RunStatus.SUCCEEDED,
    RunState.FAILED: RunStatus.FAILED,
    RunState.ABORTED: RunStatus.ABORTED,
}


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class RunStateMachine:
    """Applies and records run and stage transitions.

    Parameters
    ----------
    ledger:
        The run ledger to record transitions into.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def open(self, run: PipelineRun) -> PipelineRun:
        """Record a newly created run (its trigger and stage plan)."""
        self._ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                subject=RUN_SUBJECT,
                transition=f"->{run.state.value}",
                artifact_references=[
                    f"{service}@{version}" for service, version in sorted(run.artifacts.items())
                ],
                detail={
                    "trigger_kind": run.trigger_kind.value,
                    "commit": run.commit,
                    "stages": [s.name.value for s in run.stages],
                },
            )
        )
        return run

    def advance(
        self,
        run: PipelineRun,
        target: RunState,
        *,
        failure: StageError | None = None,
        detail: dict[str, Any] | None = None,
        **updates: Any,
    ) -> PipelineRun:
        """Move *run* to *target*, validating against the transition table."""
        allowed = VALID_RUN_TRANSITIONS.get(run.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move run {run.run_id} from {run.state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        entry_detail = dict(detail or {})
        if failure is not None:
            entry_detail["failure"] = failure.model_dump(mode="json")
        self._ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                subject=RUN_SUBJECT,
                transition=f"{run.state.value}->{target.value}",
                detail=entry_detail,
            )
        )

        changes: dict[str, Any] = {"state": target, **updates}
        if failure is not None:
            changes["failure"] = failure
        if target in _STATUS_FOR_STATE:
            changes["status"] = _STATUS_FOR_STATE[target]
            changes["finished_at"] = datetime.now(timezone.utc)
        logger.info("run %s: %s -> %s", run.run_id, run.state.value, target.value)
        return run.model_copy(update=changes)

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def set_stage(
        self,
        run: PipelineRun,
        name: StageName,
        target: StageStatus,
        *,
        error: StageError | None = None,
        artifact_references: list[str] | None = None,
        detail: dict[str, Any] | None = None,
    ) -> PipelineRun:
        """Move one stage of *run* to *target* status."""
        current = run.stage(name)
        if current is None:
            raise InvalidTransitionError(f"Run {run.run_id} has no {name.value} stage")
        allowed = VALID_STAGE_TRANSITIONS.get(current.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move stage {name.value} of {run.run_id} from "
                f"{current.status.value} to {target.value}"
            )

        entry_detail = dict(detail or {})
        if error is not None:
            entry_detail["error"] = error.model_dump(mode="json")
        self._ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                subject=name.value,
                transition=f"{current.status.value}->{target.value}",
                artifact_references=artifact_references or [],
                detail=entry_detail,
            )
        )

        now = datetime.now(timezone.utc)
        changes: dict[str, Any] = {"status": target, "error": error}
        if target == StageStatus.RUNNING:
            changes["started_at"] = now
        elif target in (StageStatus.SUCCEEDED, StageStatus.FAILED):
            changes["finished_at"] = now
        updated = current.model_copy(update=changes)
        stages = [updated if s.name == name else s for s in run.stages]
        return run.model_copy(update={"stages": stages})

    def skip_remaining(self, run: PipelineRun, *, keep: set[StageName] | None = None) -> PipelineRun:
        """Mark every still-pending stage SKIPPED, except those in *keep*."""
        for execution in run.stages:
            if execution.status == StageStatus.PENDING and execution.name not in (keep or set()):
                run = self.set_stage(run, execution.name, StageStatus.SKIPPED)
        return run


def new_stage_plan(names: list[StageName]) -> list[StageExecution]:
    return [StageExecution(name=name) for name in names]
