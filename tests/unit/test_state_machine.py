"""Tests for the ExecutionStateMachine: validated, ledger-backed transitions."""

from __future__ import annotations

import pytest

from cdpipe.core.errors import InvalidTransitionError
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.core.state_machine import ExecutionStateMachine
from cdpipe.models.actions import ActionState
from cdpipe.models.execution import ExecutionStatus
from cdpipe.models.ledger import EventType

ACTIONS = ["Source/Src", "Build/Synth"]


def _start(machine: ExecutionStateMachine, run_id: str) -> None:
    machine.start_execution(
        run_id,
        pipeline_name="P",
        revision="r1",
        definition_hash="sha256:abc",
        action_ids=ACTIONS,
    )


class TestExecutionTransitions:
    def test_start_sets_running_and_pending(self, state_machine, run_id):
        _start(state_machine, run_id)
        snap = state_machine.snapshot(run_id)
        assert snap.status == ExecutionStatus.RUNNING
        assert snap.revision == "r1"
        assert snap.action_states == {aid: ActionState.PENDING for aid in ACTIONS}

    def test_cannot_start_twice(self, state_machine, run_id):
        _start(state_machine, run_id)
        with pytest.raises(InvalidTransitionError):
            _start(state_machine, run_id)

    def test_finish_records_failure(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.finish_execution(
            run_id, ExecutionStatus.FAILED, failure={"error": "BuildFailed"}
        )
        snap = state_machine.snapshot(run_id)
        assert snap.is_terminal
        assert snap.failure == {"error": "BuildFailed"}
        assert snap.ended_at is not None

    def test_terminal_is_final(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.finish_execution(run_id, ExecutionStatus.RESTARTED)
        with pytest.raises(InvalidTransitionError):
            state_machine.finish_execution(run_id, ExecutionStatus.SUCCEEDED)

    def test_cannot_finish_unstarted(self, state_machine, run_id):
        with pytest.raises(InvalidTransitionError):
            state_machine.finish_execution(run_id, ExecutionStatus.SUCCEEDED)


class TestActionTransitions:
    def test_happy_path(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.transition_action(run_id, "Source/Src", ActionState.RUNNING)
        state_machine.transition_action(run_id, "Source/Src", ActionState.SUCCEEDED)
        assert state_machine.get_action_state(run_id, "Source/Src") == ActionState.SUCCEEDED

    def test_pending_cannot_succeed_directly(self, state_machine, run_id):
        _start(state_machine, run_id)
        with pytest.raises(InvalidTransitionError):
            state_machine.transition_action(run_id, "Source/Src", ActionState.SUCCEEDED)

    def test_pending_can_be_cancelled(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.transition_action(run_id, "Build/Synth", ActionState.CANCELLED)
        assert state_machine.get_action_state(run_id, "Build/Synth") == ActionState.CANCELLED

    def test_failed_is_final(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.transition_action(run_id, "Source/Src", ActionState.RUNNING)
        state_machine.transition_action(run_id, "Source/Src", ActionState.FAILED)
        with pytest.raises(InvalidTransitionError):
            state_machine.transition_action(run_id, "Source/Src", ActionState.RUNNING)

    def test_transitions_are_recorded(self, state_machine, ledger: ExecutionLedger, run_id):
        _start(state_machine, run_id)
        state_machine.transition_action(
            run_id, "Source/Src", ActionState.RUNNING, kind="deploy_source"
        )
        actions = [
            e for e in ledger.get_run_entries(run_id) if e.event_type == EventType.ACTION
        ]
        assert len(actions) == 1
        assert actions[0].state_transition == "pending->running"
        assert actions[0].stage_name == "Source"
        assert actions[0].action_name == "Src"
        assert actions[0].detail["kind"] == "deploy_source"


class TestRebuildFromLedger:
    def test_fresh_machine_sees_same_state(self, state_machine, ledger, run_id):
        _start(state_machine, run_id)
        state_machine.enter_tier(run_id, "Build", 1, 0)
        state_machine.transition_action(run_id, "Source/Src", ActionState.RUNNING)
        state_machine.transition_action(run_id, "Source/Src", ActionState.SUCCEEDED)
        state_machine.transition_action(run_id, "Build/Synth", ActionState.RUNNING)

        rebuilt = ExecutionStateMachine(ledger).snapshot(run_id)
        assert rebuilt.status == ExecutionStatus.RUNNING
        assert rebuilt.stage_index == 1
        assert rebuilt.definition_hash == "sha256:abc"
        assert rebuilt.action_states == {
            "Source/Src": ActionState.SUCCEEDED,
            "Build/Synth": ActionState.RUNNING,
        }

    def test_forget_rebuilds_terminal_state(self, state_machine, run_id):
        _start(state_machine, run_id)
        state_machine.finish_execution(run_id, ExecutionStatus.ABORTED)
        state_machine.forget(run_id)
        assert state_machine.snapshot(run_id).status == ExecutionStatus.ABORTED

    def test_unknown_run_is_not_started(self, state_machine):
        assert state_machine.snapshot("nope").status == ExecutionStatus.NOT_STARTED
