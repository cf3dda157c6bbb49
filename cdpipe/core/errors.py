"""Failure taxonomy for pipeline executions.

Every failure that ends an action carries the failing action's identity,
its kind, and the underlying cause, so that the ledger entry recorded for
the failure is self-describing.  ``code`` is the stable identifier written
to the ledger (e.g. ``"DeployApplyFailed"``).
"""

from __future__ import annotations

from typing import Any


class PipelineError(RuntimeError):
    """Base class for all failures raised while executing a pipeline.

    Parameters
    ----------
    message:
        Human-readable description.
    action_id:
        ``"<stage>/<action>"`` identity of the failing action, if known.
    kind:
        The failing action's kind value (e.g. ``"deploy_stack"``).
    cause:
        The underlying exception, if any.
    """

    code: str = "PipelineError"
    #: Fatal failures end the whole execution.
    fatal: bool = True

    def __init__(
        self,
        message: str,
        *,
        action_id: str = "",
        kind: str = "",
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.action_id = action_id
        self.kind = kind
        self.cause = cause

    def bind(self, action_id: str, kind: str) -> PipelineError:
        """Attach action identity if the raiser did not know it."""
        self.action_id = self.action_id or action_id
        self.kind = self.kind or kind
        return self

    def to_detail(self) -> dict[str, Any]:
        """Serializable description recorded in the ledger."""
        return {
            "error": self.code,
            "message": self.message,
            "action_id": self.action_id,
            "kind": self.kind,
            "cause": repr(self.cause) if self.cause is not None else "",
        }

    def __str__(self) -> str:
        where = f" [{self.action_id}]" if self.action_id else ""
        return f"{self.code}{where}: {self.message}"


class SourceUnavailable(PipelineError):
    """Polling or fetching the source failed (network, auth, missing revision).

    Non-fatal to the pipeline when raised by the poller: the next poll retries.
    """

    code = "SourceUnavailable"


class BuildFailed(PipelineError):
    """The build exited non-zero or did not produce its expected files."""

    code = "BuildFailed"


class SelfMutationApplyFailed(PipelineError):
    """The pipeline could not apply its own updated definition."""

    code = "SelfMutationApplyFailed"


class ChangeSetFailed(PipelineError):
    """Computing the change set for a stack failed."""

    code = "ChangeSetFailed"


class DeployApplyFailed(PipelineError):
    """Applying a computed change set failed."""

    code = "DeployApplyFailed"


class OutputExtractionFailed(PipelineError):
    """A deployed stack did not expose the outputs it was declared to expose."""

    code = "OutputExtractionFailed"


class ArtifactNotReady(PipelineError):
    """An artifact handle was consumed before its producer succeeded."""

    code = "ArtifactNotReady"


class OutputKeyMissing(PipelineError):
    """A structured-output artifact has no value for the requested key."""

    code = "OutputKeyMissing"


class ActionTimeout(PipelineError):
    """An action exceeded its configured timeout."""

    code = "ActionTimeout"


class CommandFailed(PipelineError):
    """A command exited with a non-zero status."""

    code = "CommandFailed"


class ActionCancelled(PipelineError):
    """An interruptible action stopped because a sibling failed or the run was aborted."""

    code = "ActionCancelled"


class ActionInterrupted(PipelineError):
    """An action was found RUNNING in the ledger when its execution was resumed."""

    code = "ActionInterrupted"


class PipelineDefinitionError(ValueError):
    """Raised when a pipeline definition violates a structural rule."""


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""
