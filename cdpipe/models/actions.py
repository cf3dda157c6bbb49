"""Action models: the atomic units of work inside a stage."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ActionKind(str, Enum):
    """Execution contract of an action."""

    SOURCE = "deploy_source"
    BUILD = "build"
    SELF_MUTATE = "self_mutate"
    DEPLOY_STACK = "deploy_stack"
    RUN_COMMAND = "run_command"


class ActionState(str, Enum):
    """Lifecycle of one action within one execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Valid action transitions: enforced structurally by ExecutionStateMachine.
# SKIPPED is only reachable from RUNNING: the action ran and found nothing to do.
VALID_ACTION_TRANSITIONS: dict[ActionState, set[ActionState]] = {
    ActionState.PENDING: {ActionState.RUNNING, ActionState.CANCELLED},
    ActionState.RUNNING: {
        ActionState.SUCCEEDED,
        ActionState.SKIPPED,
        ActionState.FAILED,
        ActionState.CANCELLED,
    },
    ActionState.SUCCEEDED: set(),
    ActionState.SKIPPED: set(),
    ActionState.FAILED: set(),
    ActionState.CANCELLED: set(),
}

# States that let the next tier start.
COMPLETED_ACTION_STATES: frozenset[ActionState] = frozenset(
    {ActionState.SUCCEEDED, ActionState.SKIPPED}
)


class OutputBinding(BaseModel):
    """Binds one key of a structured-output artifact to an environment variable."""

    model_config = ConfigDict(frozen=True)

    variable: str
    artifact: str
    key: str


class ActionDefinition(BaseModel):
    """Declarative definition of one action.

    ``run_order`` follows the usual pipeline numbering: actions of a stage
    with the same number run concurrently, higher numbers wait for lower
    ones.  Gaps are allowed and collapse into dense tiers when the
    pipeline graph is built.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: ActionKind
    run_order: int = Field(default=1, ge=1)
    inputs: list[str] = []
    output: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)

    # build / run_command
    install_commands: list[str] = []
    commands: list[str] = []
    expected_files: list[str] = []

    # self_mutate
    definition_file: str = "pipeline.json"

    # deploy_stack
    stack: str | None = None
    template_file: str | None = None
    output_file_name: str = "outputs.json"
    output_keys: list[str] = []

    # run_command
    output_bindings: list[OutputBinding] = []

    @model_validator(mode="after")
    def _check_kind_contract(self) -> ActionDefinition:
        kind = self.kind
        if kind == ActionKind.SOURCE:
            if self.inputs:
                raise ValueError(f"{self.name}: a source action takes no inputs")
            if not self.output:
                raise ValueError(f"{self.name}: a source action must declare an output")
        elif kind == ActionKind.BUILD:
            if len(self.inputs) != 1:
                raise ValueError(f"{self.name}: a build action takes exactly one input")
            if not self.output:
                raise ValueError(f"{self.name}: a build action must declare an output")
            if not self.commands:
                raise ValueError(f"{self.name}: a build action needs build commands")
        elif kind == ActionKind.SELF_MUTATE:
            if len(self.inputs) != 1:
                raise ValueError(f"{self.name}: self-mutation takes exactly one input")
            if self.output:
                raise ValueError(f"{self.name}: self-mutation produces no output")
        elif kind == ActionKind.DEPLOY_STACK:
            if not self.stack:
                raise ValueError(f"{self.name}: a deploy action must name its stack")
            if len(self.inputs) != 1:
                raise ValueError(f"{self.name}: a deploy action takes exactly one input")
        elif kind == ActionKind.RUN_COMMAND:
            if not self.commands:
                raise ValueError(f"{self.name}: a command action needs commands")
            if self.output:
                raise ValueError(f"{self.name}: a command action produces no output")
            for binding in self.output_bindings:
                if binding.artifact not in self.inputs:
                    raise ValueError(
                        f"{self.name}: binding {binding.variable} reads "
                        f"{binding.artifact!r}, which is not a declared input"
                    )
        return self

    @property
    def stack_template_file(self) -> str:
        """Template file read from the build artifact by a deploy action."""
        return self.template_file or f"{self.stack}.template.json"
