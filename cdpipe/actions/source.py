"""Source action: fetches the triggering revision into the source artifact."""

from __future__ import annotations

from cdpipe.actions.base import ActionContext, ActionOutcome, BaseAction
from cdpipe.core.errors import SourceUnavailable
from cdpipe.models.actions import ActionKind
from cdpipe.models.artifacts import Artifact


class SourceAction(BaseAction):
    """Fetch the source tree of ``context.revision``.

    The context's credential reference is handed to the provider and goes
    nowhere else.
    """

    kind = ActionKind.SOURCE
    interruptible = True
    failure_type = SourceUnavailable

    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        trigger = context.definition.trigger
        provider = context.collaborators.require("source")
        files = provider.fetch(trigger.source, context.revision, context.credential_ref)
        self.check_cancelled(context)

        ref = self.produce_output(context, files)
        return ActionOutcome(
            detail={
                "source": str(trigger.source),
                "revision": context.revision,
                "file_count": len(files),
                "artifact": ref.name if ref else "",
            }
        )
