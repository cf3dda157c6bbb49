"""Abstract base action with an enforced run envelope.

Every concrete action kind inherits from ``BaseAction`` and implements only
``execute()``.  The ``run()`` wrapper is **not overridable**; it enforces
the uniform envelope shared by all kinds:

    resolve inputs -> check cancellation -> execute -> classify failure

Producing artifacts goes through ``produce_output()``, which only stages
them; the scheduler seals them once the action has SUCCEEDED.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any, ClassVar, final

from pydantic import BaseModel, ConfigDict

from cdpipe.core.artifact_registry import ArtifactRegistry
from cdpipe.core.definition_store import DefinitionStore
from cdpipe.core.errors import ActionCancelled, PipelineError
from cdpipe.core.pipeline_graph import PlannedAction
from cdpipe.models.actions import ActionKind, ActionState
from cdpipe.models.artifacts import Artifact, ArtifactRef
from cdpipe.models.pipeline import PipelineDefinition
from cdpipe.providers import Collaborators

logger = logging.getLogger(__name__)


class ActionOutcome(BaseModel):
    """Successful result of one action run."""

    model_config = ConfigDict(frozen=True)

    state: ActionState = ActionState.SUCCEEDED
    detail: dict[str, Any] = {}
    # Set by a self-mutation that applied a new definition.
    restart_requested: bool = False


class ActionContext:
    """Everything an action may touch during one execution.

    Parameters
    ----------
    run_id, revision:
        Identity of the execution and the source revision it runs for.
    definition:
        The pipeline definition driving the execution.
    registry:
        Artifact registry for consuming inputs and staging outputs.
    collaborators:
        External capabilities (source, builder, deployer, runner).
    definition_store:
        Deployed-definition store; used by self-mutation.
    cancel_event:
        Set when the action should stop (only honoured by interruptible kinds).
    credential_ref:
        Name of the secret the source provider authenticates with.
    """

    def __init__(
        self,
        *,
        run_id: str,
        revision: str,
        definition: PipelineDefinition,
        registry: ArtifactRegistry,
        collaborators: Collaborators,
        definition_store: DefinitionStore,
        cancel_event: threading.Event | None = None,
        credential_ref: str = "",
    ) -> None:
        self.run_id = run_id
        self.revision = revision
        self.definition = definition
        self.registry = registry
        self.collaborators = collaborators
        self.definition_store = definition_store
        self.cancel_event = cancel_event or threading.Event()
        self.credential_ref = credential_ref


class BaseAction(abc.ABC):
    """Abstract base for all action kinds.

    Subclasses **must** set ``kind`` and implement ``execute()``.  They may
    set ``interruptible`` when their collaborator can be stopped safely
    mid-flight, and ``failure_type`` for the error unexpected exceptions
    are classified as.

    Subclasses **must not** override ``run()``.
    """

    kind: ClassVar[ActionKind]
    interruptible: ClassVar[bool] = False
    failure_type: ClassVar[type[PipelineError]] = PipelineError

    def __init__(self, planned: PlannedAction) -> None:
        self.planned = planned
        self.definition = planned.definition

    @property
    def action_id(self) -> str:
        return self.planned.action_id

    @abc.abstractmethod
    def execute(
        self, context: ActionContext, inputs: dict[str, Artifact]
    ) -> ActionOutcome:
        """Run the kind-specific work.

        Parameters
        ----------
        context:
            The execution context.
        inputs:
            Resolved input artifacts keyed by artifact name.
        """
        ...

    # ------------------------------------------------------------------
    # Envelope (not overridable)
    # ------------------------------------------------------------------

    @final
    def run(self, context: ActionContext) -> ActionOutcome:
        """Execute the full action envelope.  **Do not override.**

        Raises a ``PipelineError`` subclass bound to this action on failure.
        """
        try:
            inputs = {
                name: context.registry.consume(
                    context.run_id, name, consumer=self.action_id
                )
                for name in self.definition.inputs
            }
            self.check_cancelled(context)
            logger.info("%s [%s] started", self.action_id, self.kind.value)
            outcome = self.execute(context, inputs)
        except PipelineError as exc:
            raise exc.bind(self.action_id, self.kind.value)
        except Exception as exc:
            logger.error("%s [%s] failed: %s", self.action_id, self.kind.value, exc)
            raise self.failure_type(
                str(exc) or type(exc).__name__,
                action_id=self.action_id,
                kind=self.kind.value,
                cause=exc,
            ) from exc

        logger.info(
            "%s [%s] finished: %s", self.action_id, self.kind.value, outcome.state.value
        )
        return outcome

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def produce_output(
        self,
        context: ActionContext,
        files: dict[str, bytes],
        payload: dict[str, str] | None = None,
    ) -> ArtifactRef | None:
        """Stage this action's declared output artifact, if it has one."""
        if not self.definition.output:
            return None
        return context.registry.produce(
            context.run_id,
            self.action_id,
            self.definition.output,
            files,
            payload,
        )

    def check_cancelled(self, context: ActionContext) -> None:
        """Raise ``ActionCancelled`` if an interruptible action was asked to stop."""
        if self.interruptible and context.cancel_event.is_set():
            raise ActionCancelled(
                "Cancelled before completion",
                action_id=self.action_id,
                kind=self.kind.value,
            )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} action_id={self.action_id!r}>"
