"""Process-wide registry of pipeline runs.

The registry maps run id to the latest ``PipelineRun`` snapshot and owns
each run's abort flag. Run lifecycle is created -> running -> terminal and
is derived from the snapshot's state.
"""

from __future__ import annotations

import threading

from shipline.core.errors import RunNotFoundError
from shipline.models.runs import PipelineRun, RunLifecycle


class RunRegistry:
    """Thread-safe map of run id -> PipelineRun."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, PipelineRun] = {}
        self._abort_flags: dict[str, threading.Event] = {}

    def register(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"Run {run.run_id} is already registered")
            self._runs[run.run_id] = run
            self._abort_flags[run.run_id] = threading.Event()
        return run

    def save(self, run: PipelineRun) -> PipelineRun:
        """Replace the stored snapshot for an already registered run."""
        with self._lock:
            if run.run_id not in self._runs:
                raise RunNotFoundError(run.run_id)
            self._runs[run.run_id] = run
        return run

    def get(self, run_id: str) -> PipelineRun:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFoundError(run_id) from None

    def find(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def all(self) -> list[PipelineRun]:
        """Every run, in registration (trigger) order."""
        with self._lock:
            return list(self._runs.values())

    def active(self) -> list[PipelineRun]:
        return [r for r in self.all() if r.lifecycle != RunLifecycle.TERMINAL]

    # ------------------------------------------------------------------
    # Abort flags
    # ------------------------------------------------------------------

    def request_abort(self, run_id: str) -> None:
        with self._lock:
            if run_id not in self._abort_flags:
                raise RunNotFoundError(run_id)
            self._abort_flags[run_id].set()

    def abort_requested(self, run_id: str) -> bool:
        with self._lock:
            flag = self._abort_flags.get(run_id)
        return flag is not None and flag.is_set()
