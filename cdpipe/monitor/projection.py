"""MonitorProjection: pure read-only view over the ExecutionLedger.

The monitor is a PROJECTION of the ledger.  It does not compute truth; it
displays it.  Every call re-reads the ledger; the projection never keeps
state of its own.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cdpipe.core.run_ledger import ExecutionLedger, LedgerIntegrityError
from cdpipe.models.actions import ActionState
from cdpipe.models.execution import ExecutionStatus
from cdpipe.models.ledger import EventType, LedgerEntry


class ActionStatus(BaseModel):
    """Point-in-time status of one action, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    action_id: str
    kind: str = ""
    state: ActionState = ActionState.PENDING
    updated_at: datetime | None = None
    error: str | None = None
    artifacts: list[str] = []


class StageStatus(BaseModel):
    """Aggregated status of a stage.

    A stage is FAILED if any action failed, RUNNING while any action runs,
    SUCCEEDED once every action completed, and PENDING otherwise.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    actions: list[ActionStatus] = []

    @property
    def state(self) -> str:
        states = {a.state for a in self.actions}
        if ActionState.FAILED in states:
            return "failed"
        if ActionState.RUNNING in states:
            return "running"
        if ActionState.CANCELLED in states:
            return "cancelled"
        if states and states <= {ActionState.SUCCEEDED, ActionState.SKIPPED}:
            return "succeeded"
        return "pending"


class MonitorSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of one execution."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline_name: str = ""
    revision: str = ""
    definition_hash: str = ""
    status: ExecutionStatus = ExecutionStatus.NOT_STARTED
    stages: list[StageStatus] = []
    failure: dict[str, Any] | None = None
    artifact_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == "succeeded")

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_actions(self) -> list[ActionStatus]:
        return [a for s in self.stages for a in s.actions if a.state == ActionState.FAILED]


class MonitorProjection:
    """Pure read-only projection over the ExecutionLedger.

    Parameters
    ----------
    ledger:
        The ExecutionLedger to project from.
    """

    def __init__(self, ledger: ExecutionLedger) -> None:
        self._ledger = ledger

    def snapshot(self, run_id: str) -> MonitorSnapshot:
        """Produce a point-in-time snapshot of an execution.

        Re-reads the ledger completely; no cached state.
        """
        entries = self._ledger.get_run_entries(run_id)
        header: dict[str, Any] = {}
        status = ExecutionStatus.NOT_STARTED
        failure: dict[str, Any] | None = None
        actions: dict[str, dict[str, Any]] = {}
        artifacts: set[str] = set()

        for entry in entries:
            if entry.event_type == EventType.EXECUTION:
                if "action_ids" in entry.detail:
                    header = entry.detail
                    for action_id in entry.detail["action_ids"]:
                        actions.setdefault(action_id, {"action_id": action_id})
                if entry.to_state:
                    status = ExecutionStatus(entry.to_state)
                failure = entry.detail.get("failure", failure)
            elif entry.event_type == EventType.ACTION:
                self._apply_action(actions.setdefault(
                    entry.action_id, {"action_id": entry.action_id}
                ), entry)
            elif entry.event_type == EventType.ARTIFACT:
                info = actions.setdefault(entry.action_id, {"action_id": entry.action_id})
                info.setdefault("artifacts", []).append(entry.detail.get("artifact", ""))
                artifacts.update(entry.artifact_references)

        return MonitorSnapshot(
            run_id=run_id,
            pipeline_name=header.get("pipeline_name", ""),
            revision=header.get("revision", ""),
            definition_hash=header.get("definition_hash", ""),
            status=status,
            stages=self._group_stages(actions),
            failure=failure,
            artifact_count=len(artifacts),
            chain_valid=self._check_chain_valid(run_id),
            last_updated=entries[-1].timestamp_utc if entries else datetime.now(timezone.utc),
        )

    @staticmethod
    def _apply_action(info: dict[str, Any], entry: LedgerEntry) -> None:
        if entry.to_state:
            info["state"] = ActionState(entry.to_state)
            info["updated_at"] = entry.timestamp_utc
        if entry.detail.get("kind"):
            info["kind"] = entry.detail["kind"]
        if entry.detail.get("error"):
            info["error"] = f"{entry.detail['error']}: {entry.detail.get('message', '')}"

    @staticmethod
    def _group_stages(actions: dict[str, dict[str, Any]]) -> list[StageStatus]:
        # dicts keep insertion order, which is execution order from the header
        grouped: dict[str, list[ActionStatus]] = {}
        for action_id, info in actions.items():
            stage_name = action_id.partition("/")[0]
            grouped.setdefault(stage_name, []).append(ActionStatus(**info))
        return [StageStatus(name=name, actions=acts) for name, acts in grouped.items()]

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
