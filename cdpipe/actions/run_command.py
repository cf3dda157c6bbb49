"""Command action: integration checks over input artifacts."""

from __future__ import annotations

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.core.errors import CommandFailed
from cdpipe.models.actions import ActionKind
from cdpipe.models.artifacts import Artifact


class RunCommandAction(BaseAction):
    """Run commands against the files of the input artifacts.

    Input files are merged in declaration order.  Each output binding
    exports one structured-output value as an environment variable, so a
    command can read e.g. a deployed endpoint URL without parsing files.
    """

    kind = ActionKind.RUN_COMMAND
    interruptible = True
    failure_type = CommandFailed

    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        runner = context.collaborators.require("runner")

        working_files: dict[str, bytes] = {}
        for name in self.definition.inputs:
            working_files.update(inputs[name].files)

        env = {
            binding.variable: context.registry.get_output(
                context.run_id, binding.artifact, binding.key, consumer=self.action_id
            )
            for binding in self.definition.output_bindings
        }

        exit_code = runner.run(
            list(self.definition.commands),
            working_files,
            env=env,
            cancel_event=context.cancel_event,
        )
        self.check_cancelled(context)
        if exit_code != 0:
            raise CommandFailed(f"Command exited with status {exit_code}")

        return ActionOutcome(
            detail={"exit_code": exit_code, "bound": sorted(env)}
        )
