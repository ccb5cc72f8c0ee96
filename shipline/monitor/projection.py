"""RunProjection: read-only view of runs rebuilt from the run ledger.

The ledger is the durable truth; this projection replays a run's entries to
reconstruct its ``PipelineRun`` snapshot. The orchestrator uses it to resume
runs started by another process (e.g. promoting a run from the CLI), and
the ``status`` command uses it to answer operator queries.
"""

from __future__ import annotations

import logging

from shipline.core.run_ledger import LedgerIntegrityError, RunLedger
from shipline.models.artifacts import parse_ref
from shipline.models.ledger import RUN_SUBJECT, LedgerEntry
from shipline.models.runs import PipelineRun, RunStatus, TriggerKind
from shipline.models.stages import (
    RunState,
    StageError,
    StageExecution,
    StageName,
    StageStatus,
)

logger = logging.getLogger(__name__)

_TERMINAL_STATUS: dict[RunState, RunStatus] = {
    RunState.SUCCEEDED: RunStatus.SUCCEEDED,
    RunState.FAILED: RunStatus.FAILED,
    RunState.ABORTED: RunStatus.ABORTED,
}


class RunProjection:
    """Pure read-only projection over the RunLedger.

    Never stores state; every call re-reads the ledger.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger

    def run_ids(self) -> list[str]:
        return self._ledger.get_all_run_ids()

    def chain_valid(self, run_id: str) -> bool:
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError as exc:
            logger.warning("Ledger chain for %s is broken: %s", run_id, exc)
            return False

    def restore(self, run_id: str) -> PipelineRun | None:
        """Rebuild the run snapshot, or None if the run is unknown."""
        entries = self._ledger.get_run_entries(run_id)
        if not entries:
            return None

        opening = entries[0]
        run = PipelineRun(
            run_id=run_id,
            trigger_kind=TriggerKind(opening.detail.get("trigger_kind", TriggerKind.PUSH_TO_INTEGRATION.value)),
            commit=opening.detail.get("commit", ""),
            stages=[
                StageExecution(name=StageName(name))
                for name in opening.detail.get("stages", [])
            ],
            artifacts=dict(parse_ref(ref) for ref in opening.artifact_references),
            created_at=opening.timestamp_utc,
        )
        for entry in entries[1:]:
            if entry.subject == RUN_SUBJECT:
                run = self._apply_run_entry(run, entry)
            else:
                run = self._apply_stage_entry(run, entry)
        return run

    @staticmethod
    def _apply_run_entry(run: PipelineRun, entry: LedgerEntry) -> PipelineRun:
        state = RunState(entry.to_state)
        changes: dict = {"state": state}
        if "staging_environment_id" in entry.detail:
            changes["staging_environment_id"] = entry.detail["staging_environment_id"]
        if "failure" in entry.detail:
            changes["failure"] = StageError.model_validate(entry.detail["failure"])
        if state in _TERMINAL_STATUS:
            changes["status"] = _TERMINAL_STATUS[state]
            changes["finished_at"] = entry.timestamp_utc
        return run.model_copy(update=changes)

    @staticmethod
    def _apply_stage_entry(run: PipelineRun, entry: LedgerEntry) -> PipelineRun:
        name = StageName(entry.subject)
        status = StageStatus(entry.to_state)
        stages = []
        for execution in run.stages:
            if execution.name == name:
                changes: dict = {"status": status}
                if status == StageStatus.RUNNING:
                    changes["started_at"] = entry.timestamp_utc
                elif status in (StageStatus.SUCCEEDED, StageStatus.FAILED):
                    changes["finished_at"] = entry.timestamp_utc
                if "error" in entry.detail:
                    changes["error"] = StageError.model_validate(entry.detail["error"])
                execution = execution.model_copy(update=changes)
            stages.append(execution)
        run = run.model_copy(update={"stages": stages})
        if name == StageName.BUILD and status == StageStatus.SUCCEEDED:
            run = run.model_copy(
                update={"artifacts": dict(parse_ref(r) for r in entry.artifact_references)}
            )
        return run
