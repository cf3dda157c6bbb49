"""Execution state models: one execution is one run of a pipeline for one revision."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from cdpipe.models.actions import ActionState


class ExecutionStatus(str, Enum):
    """State of one pipeline execution."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Abandoned in favour of an updated pipeline definition; not an error.
    RESTARTED = "restarted"
    ABORTED = "aborted"


VALID_EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.NOT_STARTED: {ExecutionStatus.RUNNING},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.RESTARTED,
        ExecutionStatus.ABORTED,
    },
    ExecutionStatus.SUCCEEDED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.RESTARTED: set(),
    ExecutionStatus.ABORTED: set(),
}

TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset(
    s for s, targets in VALID_EXECUTION_TRANSITIONS.items() if not targets
)


class ExecutionSnapshot(BaseModel):
    """Point-in-time state of an execution, rebuilt from the ledger."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline_name: str = ""
    revision: str = ""
    definition_hash: str = ""
    status: ExecutionStatus = ExecutionStatus.NOT_STARTED
    stage_index: int = 0
    tier_index: int = 0
    action_states: dict[str, ActionState] = {}  # "<stage>/<action>" -> state
    failure: dict[str, Any] | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionResult(BaseModel):
    """What the scheduler reports once an execution reaches a terminal state."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    revision: str
    status: ExecutionStatus
    stage_index: int = 0
    failure: dict[str, Any] | None = None
