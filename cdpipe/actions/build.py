"""Build action: install dependencies and synthesize the build tree."""

from __future__ import annotations

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.core.errors import BuildFailed
from cdpipe.models.actions import ActionKind
from cdpipe.models.artifacts import Artifact


class BuildAction(BaseAction):
    """Run the build commands over the source artifact.

    Fails with ``BuildFailed`` on a non-zero exit or when any of the
    ``expected_files`` is absent from the produced tree.
    """

    kind = ActionKind.BUILD
    interruptible = True
    failure_type = BuildFailed

    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        source = inputs[self.definition.inputs[0]]
        builder = context.collaborators.require("builder")

        result = builder.run(
            source.files,
            list(self.definition.commands),
            install_commands=list(self.definition.install_commands),
            cancel_event=context.cancel_event,
        )
        self.check_cancelled(context)

        if result.exit_code != 0:
            raise BuildFailed(
                f"Build exited with status {result.exit_code}: "
                f"{result.log.strip()[-500:]}"
            )
        missing = [f for f in self.definition.expected_files if f not in result.files]
        if missing:
            raise BuildFailed(f"Build did not produce expected files: {missing}")

        ref = self.produce_output(context, result.files)
        return ActionOutcome(
            detail={
                "file_count": len(result.files),
                "artifact": ref.name if ref else "",
            }
        )
