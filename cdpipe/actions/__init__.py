"""Action kinds: one class per execution contract."""

from __future__ import annotations

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.actions.build import BuildAction
from cdpipe.actions.deploy_stack import DeployStackAction
from cdpipe.actions.run_command import RunCommandAction
from cdpipe.actions.self_mutate import SelfMutateAction
from cdpipe.actions.source import SourceAction
from cdpipe.core.pipeline_graph import PlannedAction
from cdpipe.models.actions import ActionKind

ACTION_TYPES: dict[ActionKind, type[BaseAction]] = {
    ActionKind.SOURCE: SourceAction,
    ActionKind.BUILD: BuildAction,
    ActionKind.SELF_MUTATE: SelfMutateAction,
    ActionKind.DEPLOY_STACK: DeployStackAction,
    ActionKind.RUN_COMMAND: RunCommandAction,
}


def create_action(planned: PlannedAction) -> BaseAction:
    """Instantiate the action class for a planned action (fresh per execution)."""
    return ACTION_TYPES[planned.kind](planned)


__all__ = [
    "ACTION_TYPES",
    "ActionContext",
    "ActionOutcome",
    "BaseAction",
    "BuildAction",
    "DeployStackAction",
    "RunCommandAction",
    "SelfMutateAction",
    "SourceAction",
    "create_action",
]
