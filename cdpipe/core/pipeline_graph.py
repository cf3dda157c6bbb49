"""Pipeline graph: validated, tiered view of a pipeline definition.

Built once from a ``PipelineDefinition`` and then only read by the
scheduler.  Construction enforces:

- unique stage names, unique action names within a stage;
- every artifact has exactly one producer;
- every input is produced by an action in an earlier stage, or in an
  earlier tier of the same stage;
- source actions live in the first stage;
- exactly one self-mutation stage, holding a single self-mutation action
  fed by a build action of the immediately preceding stage, and ordered
  before every stage that deploys a stack;
- no deploy action targets the pipeline's own stack.

Run orders are grouped into dense tiers: distinct ``run_order`` values of
a stage sorted ascending become tiers 0..n-1, and actions keep their
declaration order within a tier.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from cdpipe.core.errors import PipelineDefinitionError
from cdpipe.models.actions import ActionDefinition, ActionKind
from cdpipe.models.pipeline import PipelineDefinition


class PlannedAction(BaseModel):
    """An action placed in the graph."""

    model_config = ConfigDict(frozen=True)

    stage_name: str
    stage_index: int
    tier: int
    position: int  # declaration order within the stage
    definition: ActionDefinition

    @property
    def action_id(self) -> str:
        return f"{self.stage_name}/{self.definition.name}"

    @property
    def kind(self) -> ActionKind:
        return self.definition.kind


class PlannedStage(BaseModel):
    """A stage with its actions grouped into tiers."""

    model_config = ConfigDict(frozen=True)

    name: str
    index: int
    tiers: list[list[PlannedAction]]

    @property
    def actions(self) -> list[PlannedAction]:
        return [a for tier in self.tiers for a in tier]


def build_tiers(
    stage_name: str, stage_index: int, actions: list[ActionDefinition]
) -> list[list[PlannedAction]]:
    """Group actions into dense tiers by run order, stable in declaration order."""
    orders = sorted({a.run_order for a in actions})
    dense = {order: tier for tier, order in enumerate(orders)}
    tiers: list[list[PlannedAction]] = [[] for _ in orders]
    for position, action in enumerate(actions):
        tier = dense[action.run_order]
        tiers[tier].append(
            PlannedAction(
                stage_name=stage_name,
                stage_index=stage_index,
                tier=tier,
                position=position,
                definition=action,
            )
        )
    return tiers


class PipelineGraph:
    """Validated stage/tier structure of a pipeline definition."""

    def __init__(self, definition: PipelineDefinition) -> None:
        self.definition = definition
        self.stages: list[PlannedStage] = [
            PlannedStage(
                name=stage.name,
                index=index,
                tiers=build_tiers(stage.name, index, stage.actions),
            )
            for index, stage in enumerate(definition.stages)
        ]
        self._actions: dict[str, PlannedAction] = {}
        self._producers: dict[str, PlannedAction] = {}
        self._validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        self._validate_names()
        self._validate_artifact_flow()
        self._validate_source_placement()
        self._validate_self_mutation()

    def _validate_names(self) -> None:
        seen_stages: set[str] = set()
        for stage in self.stages:
            if stage.name in seen_stages:
                raise PipelineDefinitionError(f"Duplicate stage name {stage.name!r}")
            seen_stages.add(stage.name)
            for action in stage.actions:
                if action.action_id in self._actions:
                    raise PipelineDefinitionError(
                        f"Duplicate action name {action.definition.name!r} "
                        f"in stage {stage.name!r}"
                    )
                self._actions[action.action_id] = action

    def _validate_artifact_flow(self) -> None:
        for stage in self.stages:
            for action in stage.actions:
                output = action.definition.output
                if output is None:
                    continue
                if output in self._producers:
                    other = self._producers[output]
                    raise PipelineDefinitionError(
                        f"Artifact {output!r} is produced by both "
                        f"{other.action_id} and {action.action_id}"
                    )
                self._producers[output] = action

        for stage in self.stages:
            for action in stage.actions:
                for name in action.definition.inputs:
                    producer = self._producers.get(name)
                    if producer is None:
                        raise PipelineDefinitionError(
                            f"{action.action_id} consumes {name!r}, "
                            f"which no action produces"
                        )
                    if not self.precedes(producer, action):
                        raise PipelineDefinitionError(
                            f"{action.action_id} consumes {name!r} before its "
                            f"producer {producer.action_id} has run"
                        )

    def _validate_source_placement(self) -> None:
        for stage in self.stages[1:]:
            for action in stage.actions:
                if action.kind == ActionKind.SOURCE:
                    raise PipelineDefinitionError(
                        f"Source action {action.action_id} must be in the first stage"
                    )

    def _validate_self_mutation(self) -> None:
        mutation_stages = [
            s for s in self.stages if self._stage_has(s, ActionKind.SELF_MUTATE)
        ]
        if len(mutation_stages) != 1:
            raise PipelineDefinitionError(
                f"A pipeline needs exactly one self-mutation stage, "
                f"found {len(mutation_stages)}"
            )
        stage = mutation_stages[0]
        if len(stage.actions) != 1:
            raise PipelineDefinitionError(
                f"Self-mutation stage {stage.name!r} must contain only the "
                f"self-mutation action"
            )
        mutate = stage.actions[0]
        producer = self.producer_of(mutate.definition.inputs[0])
        if producer.kind != ActionKind.BUILD or producer.stage_index != stage.index - 1:
            raise PipelineDefinitionError(
                f"Self-mutation stage {stage.name!r} must directly follow the "
                f"build stage producing {mutate.definition.inputs[0]!r}"
            )
        for deploy_index in self.deploy_stage_indexes:
            if deploy_index <= stage.index:
                raise PipelineDefinitionError(
                    f"Stage {self.stages[deploy_index].name!r} deploys stacks "
                    f"before the self-mutation stage {stage.name!r}"
                )
        for action in self._actions.values():
            if (
                action.kind == ActionKind.DEPLOY_STACK
                and action.definition.stack == self.definition.name
            ):
                raise PipelineDefinitionError(
                    f"{action.action_id} deploys the pipeline's own stack; "
                    f"only the self-mutation stage may do that"
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def precedes(first: PlannedAction, second: PlannedAction) -> bool:
        """Whether *first* is guaranteed to finish before *second* starts."""
        if first.stage_index != second.stage_index:
            return first.stage_index < second.stage_index
        return first.tier < second.tier

    @property
    def self_mutation_stage_index(self) -> int:
        return next(
            s.index for s in self.stages if self._stage_has(s, ActionKind.SELF_MUTATE)
        )

    @property
    def deploy_stage_indexes(self) -> list[int]:
        return [
            s.index for s in self.stages if self._stage_has(s, ActionKind.DEPLOY_STACK)
        ]

    def _stage_has(self, stage: PlannedStage, kind: ActionKind) -> bool:
        return self.definition.stages[stage.index].has_kind(kind)

    def get_action(self, action_id: str) -> PlannedAction:
        return self._actions[action_id]

    def producer_of(self, artifact: str) -> PlannedAction:
        return self._producers[artifact]

    @property
    def action_ids(self) -> list[str]:
        """All action ids in execution order."""
        return [a.action_id for s in self.stages for a in s.actions]
