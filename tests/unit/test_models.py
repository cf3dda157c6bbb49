"""Tests for the pydantic models: kind contracts, immutability, hashing."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from cdpipe.models.actions import (
    COMPLETED_ACTION_STATES,
    VALID_ACTION_TRANSITIONS,
    ActionDefinition,
    ActionKind,
    ActionState,
    OutputBinding,
)
from cdpipe.models.execution import TERMINAL_STATUSES, ExecutionStatus
from cdpipe.models.pipeline import (
    PipelineDefinition,
    SourceIdentity,
    TriggerPolicy,
    dump_definition,
    load_definition,
)


class TestActionDefinition:
    def test_frozen(self):
        action = ActionDefinition(name="Src", kind=ActionKind.SOURCE, output="s")
        with pytest.raises(ValidationError):
            action.name = "Other"

    def test_run_order_must_be_positive(self):
        with pytest.raises(ValidationError):
            ActionDefinition(name="Src", kind=ActionKind.SOURCE, output="s", run_order=0)

    def test_source_takes_no_inputs(self):
        with pytest.raises(ValidationError, match="no inputs"):
            ActionDefinition(name="Src", kind=ActionKind.SOURCE, inputs=["x"], output="s")

    def test_source_needs_output(self):
        with pytest.raises(ValidationError, match="output"):
            ActionDefinition(name="Src", kind=ActionKind.SOURCE)

    def test_build_needs_commands(self):
        with pytest.raises(ValidationError, match="commands"):
            ActionDefinition(name="B", kind=ActionKind.BUILD, inputs=["s"], output="b")

    def test_self_mutate_has_no_output(self):
        with pytest.raises(ValidationError, match="no output"):
            ActionDefinition(
                name="M", kind=ActionKind.SELF_MUTATE, inputs=["b"], output="x"
            )

    def test_deploy_needs_stack(self):
        with pytest.raises(ValidationError, match="stack"):
            ActionDefinition(name="D", kind=ActionKind.DEPLOY_STACK, inputs=["b"])

    def test_binding_must_reference_an_input(self):
        with pytest.raises(ValidationError, match="not a declared input"):
            ActionDefinition(
                name="T",
                kind=ActionKind.RUN_COMMAND,
                inputs=["a"],
                commands=["true"],
                output_bindings=[OutputBinding(variable="V", artifact="b", key="K")],
            )

    def test_default_template_file(self):
        action = ActionDefinition(
            name="D", kind=ActionKind.DEPLOY_STACK, inputs=["b"], stack="Api"
        )
        assert action.stack_template_file == "Api.template.json"

    def test_explicit_template_file(self):
        action = ActionDefinition(
            name="D", kind=ActionKind.DEPLOY_STACK, inputs=["b"], stack="Api",
            template_file="cdk.out/api.json",
        )
        assert action.stack_template_file == "cdk.out/api.json"


class TestStateTables:
    def test_terminal_action_states_have_no_exits(self):
        for state in (ActionState.SUCCEEDED, ActionState.SKIPPED,
                      ActionState.FAILED, ActionState.CANCELLED):
            assert VALID_ACTION_TRANSITIONS[state] == set()

    def test_skipped_counts_as_completed(self):
        assert ActionState.SKIPPED in COMPLETED_ACTION_STATES
        assert ActionState.FAILED not in COMPLETED_ACTION_STATES

    def test_terminal_execution_statuses(self):
        assert TERMINAL_STATUSES == {
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.RESTARTED,
            ExecutionStatus.ABORTED,
        }


class TestPipelineDefinition:
    def test_hash_is_stable(self, definition: PipelineDefinition):
        clone = PipelineDefinition.model_validate_json(definition.to_json())
        assert clone.definition_hash == definition.definition_hash

    def test_hash_changes_with_content(self, make_definition):
        a = make_definition()
        b = make_definition(restart_execution_on_update=False)
        assert a.definition_hash != b.definition_hash

    def test_trigger_policy_holds_no_credential(self, definition):
        assert "credential_ref" not in TriggerPolicy.model_fields
        assert "my-github-token" not in definition.to_json()

    def test_source_identity_str(self):
        assert str(SourceIdentity(owner="NetaNir", repo="meerkats")) == "NetaNir/meerkats@main"

    def test_dump_and_load(self, tmp_path: Path, definition: PipelineDefinition):
        path = dump_definition(definition, tmp_path / "nested" / "pipeline.json")
        assert load_definition(path) == definition

    def test_stage_has_kind(self, definition: PipelineDefinition):
        deploy = definition.stages[-1]
        assert deploy.has_kind(ActionKind.DEPLOY_STACK)
        assert not deploy.has_kind(ActionKind.SOURCE)
