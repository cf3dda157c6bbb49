"""Stack deploy action: change set, apply, and optional output capture."""

from __future__ import annotations

import json

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.core.errors import (
    ChangeSetFailed,
    DeployApplyFailed,
    OutputExtractionFailed,
)
from cdpipe.models.actions import ActionKind
from cdpipe.models.artifacts import Artifact


class DeployStackAction(BaseAction):
    """Deploy one stack from its template in the build artifact.

    Not interruptible: stopping a change set half-applied is left to the
    deployer's own semantics, so a started deploy always runs to completion.

    With an output artifact configured, the declared stack outputs
    (``output_keys``; every output when empty) become the artifact's
    payload and are also written to ``output_file_name`` as JSON.
    """

    kind = ActionKind.DEPLOY_STACK
    failure_type = DeployApplyFailed

    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        stack = self.definition.stack
        build = inputs[self.definition.inputs[0]]
        deployer = context.collaborators.require("deployer")

        template_file = self.definition.stack_template_file
        template = build.files.get(template_file)
        if template is None:
            raise ChangeSetFailed(
                f"Build artifact {build.ref.name!r} has no template {template_file!r}"
            )

        try:
            change_set = deployer.create_change_set(stack, template)
        except Exception as exc:
            raise ChangeSetFailed(
                f"Change set for stack {stack!r} failed: {exc}", cause=exc
            ) from exc

        detail: dict = {
            "stack": stack,
            "change_set_id": change_set.change_set_id,
            "changes": len(change_set.changes),
        }
        if change_set.is_empty:
            detail["status"] = "NO_CHANGES"
        else:
            try:
                deployed = deployer.execute_change_set(change_set)
            except Exception as exc:
                raise DeployApplyFailed(
                    f"Applying change set {change_set.change_set_id} to "
                    f"{stack!r} failed: {exc}",
                    cause=exc,
                ) from exc
            detail["status"] = deployed.status

        if self.definition.output:
            payload = self._extract_outputs(stack, deployer)
            file_name = self.definition.output_file_name
            body = json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")
            self.produce_output(context, {file_name: body}, payload)
            detail["outputs"] = sorted(payload)

        return ActionOutcome(detail=detail)

    def _extract_outputs(self, stack: str, deployer) -> dict[str, str]:
        try:
            outputs = deployer.current_outputs(stack)
        except Exception as exc:
            raise OutputExtractionFailed(
                f"Reading outputs of {stack!r} failed: {exc}", cause=exc
            ) from exc

        keys = self.definition.output_keys or sorted(outputs)
        missing = [k for k in keys if k not in outputs]
        if missing:
            raise OutputExtractionFailed(
                f"Stack {stack!r} does not expose outputs {missing}"
            )
        return {k: str(outputs[k]) for k in keys}
