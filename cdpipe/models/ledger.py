"""Execution ledger entry model (append-only, hash-chained).

One entry per event: execution transitions, stage starts, action
transitions, artifact seals and trigger records.  The execution state used
for resume is a projection of these entries.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """What a ledger entry records."""

    EXECUTION = "execution"
    STAGE = "stage"
    ACTION = "action"
    ARTIFACT = "artifact"
    TRIGGER = "trigger"


class LedgerEntry(BaseModel):
    """A single entry in the append-only execution ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    event_type: EventType
    stage_name: str = ""
    action_name: str = ""
    state_transition: str = ""  # "from_state->to_state", e.g. "pending->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: dict[str, Any] = {}
    artifact_references: list[str] = []
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed after construction, seals this entry

    @property
    def action_id(self) -> str:
        return f"{self.stage_name}/{self.action_name}" if self.action_name else ""

    @property
    def to_state(self) -> str:
        if "->" not in self.state_transition:
            return ""
        return self.state_transition.split("->", 1)[1]
