"""Self-mutation action: redeploy the pipeline's own definition.

The definition encoded in the build artifact is compared with the deployed
one.  When they differ, the new definition is applied and the execution
must end: the definition driving it is no longer the deployed one.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.core.errors import PipelineDefinitionError, SelfMutationApplyFailed
from cdpipe.core.pipeline_graph import PipelineGraph
from cdpipe.models.actions import ActionKind, ActionState
from cdpipe.models.artifacts import Artifact
from cdpipe.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)


class SelfMutateAction(BaseAction):
    kind = ActionKind.SELF_MUTATE
    failure_type = SelfMutationApplyFailed

    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        build = inputs[self.definition.inputs[0]]
        desired = self._load_desired(build, context)

        running_hash = context.definition.definition_hash
        deployed_hash = context.definition_store.current_hash() or running_hash
        desired_hash = desired.definition_hash
        detail = {
            "running_hash": running_hash,
            "deployed_hash": deployed_hash,
            "desired_hash": desired_hash,
        }

        if desired_hash == deployed_hash == running_hash:
            logger.info("%s: pipeline definition unchanged", self.action_id)
            return ActionOutcome(state=ActionState.SKIPPED, detail=detail)

        if desired_hash != deployed_hash:
            try:
                context.definition_store.apply(
                    desired, applied_by=f"{context.run_id}/{self.action_id}"
                )
            except Exception as exc:
                raise SelfMutationApplyFailed(
                    f"Could not apply definition {desired_hash}: {exc}", cause=exc
                ) from exc
            detail["applied"] = True
        else:
            # Already deployed by someone else; this execution is simply stale.
            detail["applied"] = False

        logger.info(
            "%s: pipeline definition changed (%s -> %s), restarting",
            self.action_id,
            running_hash[:19],
            desired_hash[:19],
        )
        return ActionOutcome(detail=detail, restart_requested=True)

    def _load_desired(
        self, build: Artifact, context: ActionContext
    ) -> PipelineDefinition:
        file_name = self.definition.definition_file
        raw = build.files.get(file_name)
        if raw is None:
            raise SelfMutationApplyFailed(
                f"Build artifact {build.ref.name!r} has no {file_name!r}"
            )
        try:
            desired = PipelineDefinition.model_validate_json(raw)
            PipelineGraph(desired)
        except (ValidationError, PipelineDefinitionError) as exc:
            raise SelfMutationApplyFailed(
                f"Definition in {file_name!r} is invalid: {exc}", cause=exc
            ) from exc
        if desired.name != context.definition.name:
            raise SelfMutationApplyFailed(
                f"Definition in {file_name!r} is for pipeline {desired.name!r}, "
                f"not {context.definition.name!r}"
            )
        return desired
