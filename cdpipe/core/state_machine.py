"""Deterministic execution/action state machine.

Enforces:
- Valid action transitions only (VALID_ACTION_TRANSITIONS table)
- Valid execution transitions only (VALID_EXECUTION_TRANSITIONS table)
- Every transition recorded in the execution ledger
- State rebuilt from the ledger on demand (resume after a restart)
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from cdpipe.core.errors import InvalidTransitionError
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.models.actions import VALID_ACTION_TRANSITIONS, ActionState
from cdpipe.models.execution import (
    VALID_EXECUTION_TRANSITIONS,
    ExecutionSnapshot,
    ExecutionStatus,
)
from cdpipe.models.ledger import EventType, LedgerEntry


class _RunState:
    """Mutable per-run state behind the frozen ``ExecutionSnapshot``."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.pipeline_name = ""
        self.revision = ""
        self.definition_hash = ""
        self.status = ExecutionStatus.NOT_STARTED
        self.stage_index = 0
        self.tier_index = 0
        self.action_states: dict[str, ActionState] = {}
        self.failure: dict[str, Any] | None = None
        self.started_at: datetime | None = None
        self.ended_at: datetime | None = None

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            revision=self.revision,
            definition_hash=self.definition_hash,
            status=self.status,
            stage_index=self.stage_index,
            tier_index=self.tier_index,
            action_states=dict(self.action_states),
            failure=self.failure,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


class ExecutionStateMachine:
    """Records and validates execution and action transitions.

    Parameters
    ----------
    ledger:
        The execution ledger to record transitions into.
    """

    def __init__(self, ledger: ExecutionLedger) -> None:
        self._ledger = ledger
        self._lock = threading.RLock()
        # In-memory state cache: run_id -> state
        self._runs: dict[str, _RunState] = {}

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def _state(self, run_id: str) -> _RunState:
        if run_id not in self._runs:
            self._runs[run_id] = self._rebuild_state(run_id)
        return self._runs[run_id]

    def snapshot(self, run_id: str) -> ExecutionSnapshot:
        """Return the current state of an execution."""
        with self._lock:
            return self._state(run_id).snapshot()

    def get_action_state(self, run_id: str, action_id: str) -> ActionState:
        with self._lock:
            return self._state(run_id).action_states.get(action_id, ActionState.PENDING)

    def forget(self, run_id: str) -> None:
        """Drop the cached state so the next read rebuilds it from the ledger."""
        with self._lock:
            self._runs.pop(run_id, None)

    def _rebuild_state(self, run_id: str) -> _RunState:
        """Rebuild state from the ledger (for resume)."""
        state = _RunState(run_id)
        for entry in self._ledger.get_run_entries(run_id):
            if entry.event_type == EventType.EXECUTION:
                if entry.detail.get("action_ids") is not None:
                    state.pipeline_name = entry.detail.get("pipeline_name", "")
                    state.revision = entry.detail.get("revision", "")
                    state.definition_hash = entry.detail.get("definition_hash", "")
                    state.action_states = {
                        aid: ActionState.PENDING for aid in entry.detail["action_ids"]
                    }
                    state.started_at = entry.timestamp_utc
                if entry.to_state:
                    state.status = ExecutionStatus(entry.to_state)
                    if state.status != ExecutionStatus.RUNNING:
                        state.ended_at = entry.timestamp_utc
                if entry.detail.get("failure"):
                    state.failure = entry.detail["failure"]
            elif entry.event_type == EventType.STAGE:
                state.stage_index = entry.detail.get("stage_index", state.stage_index)
                state.tier_index = entry.detail.get("tier", 0)
            elif entry.event_type == EventType.ACTION and entry.to_state:
                state.action_states[entry.action_id] = ActionState(entry.to_state)
        return state

    # ------------------------------------------------------------------
    # Execution transitions
    # ------------------------------------------------------------------

    def start_execution(
        self,
        run_id: str,
        *,
        pipeline_name: str,
        revision: str,
        definition_hash: str,
        action_ids: list[str],
    ) -> LedgerEntry:
        """Move a new execution to RUNNING with every action PENDING."""
        with self._lock:
            state = self._state(run_id)
            self._check_execution(state, ExecutionStatus.RUNNING)
            entry = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    event_type=EventType.EXECUTION,
                    state_transition=f"{state.status.value}->{ExecutionStatus.RUNNING.value}",
                    detail={
                        "pipeline_name": pipeline_name,
                        "revision": revision,
                        "definition_hash": definition_hash,
                        "action_ids": list(action_ids),
                    },
                )
            )
            state.pipeline_name = pipeline_name
            state.revision = revision
            state.definition_hash = definition_hash
            state.status = ExecutionStatus.RUNNING
            state.action_states = {aid: ActionState.PENDING for aid in action_ids}
            state.started_at = entry.timestamp_utc
            return entry

    def finish_execution(
        self,
        run_id: str,
        status: ExecutionStatus,
        *,
        failure: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Move a running execution to a terminal status."""
        with self._lock:
            state = self._state(run_id)
            self._check_execution(state, status)
            detail: dict[str, Any] = {"stage_index": state.stage_index}
            if failure:
                detail["failure"] = failure
            entry = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    event_type=EventType.EXECUTION,
                    state_transition=f"{state.status.value}->{status.value}",
                    detail=detail,
                )
            )
            state.status = status
            state.failure = failure
            state.ended_at = datetime.now(timezone.utc)
            return entry

    @staticmethod
    def _check_execution(state: _RunState, target: ExecutionStatus) -> None:
        allowed = VALID_EXECUTION_TRANSITIONS.get(state.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move execution {state.run_id} from {state.status.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )

    # ------------------------------------------------------------------
    # Stage / tier progress
    # ------------------------------------------------------------------

    def enter_tier(self, run_id: str, stage_name: str, stage_index: int, tier: int) -> LedgerEntry:
        """Record that the scheduler is about to start *tier* of a stage."""
        with self._lock:
            state = self._state(run_id)
            entry = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    event_type=EventType.STAGE,
                    stage_name=stage_name,
                    detail={"stage_index": stage_index, "tier": tier},
                )
            )
            state.stage_index = stage_index
            state.tier_index = tier
            return entry

    # ------------------------------------------------------------------
    # Action transitions
    # ------------------------------------------------------------------

    def transition_action(
        self,
        run_id: str,
        action_id: str,
        target: ActionState,
        *,
        kind: str = "",
        detail: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Transition an action, recording it in the ledger."""
        with self._lock:
            state = self._state(run_id)
            current = state.action_states.get(action_id, ActionState.PENDING)
            allowed = VALID_ACTION_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {action_id} from {current.value} to "
                    f"{target.value}. Allowed: {sorted(s.value for s in allowed)}"
                )
            stage_name, _, action_name = action_id.partition("/")
            entry = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    event_type=EventType.ACTION,
                    stage_name=stage_name,
                    action_name=action_name,
                    state_transition=f"{current.value}->{target.value}",
                    detail={"kind": kind, **(detail or {})},
                )
            )
            state.action_states[action_id] = target
            return entry
