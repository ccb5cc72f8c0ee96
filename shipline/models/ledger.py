"""Run ledger entry model: append-only, hash-chained.

One entry per run-state or stage-status transition. Entries are scoped to
``run_id`` and ``subject`` (``"run"`` or a stage name).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

RUN_SUBJECT = "run"


class LedgerEntry(BaseModel):
    """A single entry in the append-only run ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    subject: str  # "run" or a StageName value
    transition: str  # "from->to", e.g. "pending->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    artifact_references: list[str] = []  # "service@version"
    detail: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def to_state(self) -> str:
        return self.transition.split("->", 1)[-1]
