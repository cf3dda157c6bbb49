"""Pipeline and stage definition models.

A ``PipelineDefinition`` is pure data: it can be serialized into the build
artifact, compared by content hash, and redeployed by the self-mutation
stage.  Structural rules that span stages (ordering of the self-mutation
stage, artifact producers) are checked by ``PipelineGraph``.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from cdpipe.core.hasher import compute_definition_hash
from cdpipe.models.actions import ActionDefinition, ActionKind


class TriggerMode(str, Enum):
    """How new source revisions are detected."""

    POLL = "poll"
    PUSH = "push"


class SourceIdentity(BaseModel):
    """Repository coordinates watched by the trigger and fetched by the source action."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    branch: str = "main"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}@{self.branch}"


class TriggerPolicy(BaseModel):
    """When a new execution starts.

    The source credential reference is not part of the policy; the
    orchestrator supplies it from ``Settings.source_token_secret_name``.
    """

    model_config = ConfigDict(frozen=True)

    mode: TriggerMode = TriggerMode.POLL
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    source: SourceIdentity
    # Abort the in-flight execution (at its next tier boundary) when a newer
    # revision arrives, instead of letting it finish first.
    supersede_in_flight: bool = False


class StageDefinition(BaseModel):
    """An ordered group of actions."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    actions: list[ActionDefinition] = Field(min_length=1)

    def has_kind(self, kind: ActionKind) -> bool:
        """Whether any action of this stage is of *kind*."""
        return any(a.kind == kind for a in self.actions)


class PipelineDefinition(BaseModel):
    """The complete, serializable definition of a pipeline."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    stages: list[StageDefinition] = Field(min_length=1)
    trigger: TriggerPolicy
    # Start a fresh execution of the same revision after a self-mutation.
    restart_execution_on_update: bool = True

    @property
    def definition_hash(self) -> str:
        """Content address of the canonical definition."""
        return compute_definition_hash(self.model_dump(mode="json"))

    def to_json(self) -> str:
        """Serialize to the JSON form stored in build artifacts."""
        return self.model_dump_json(indent=2)


def load_definition(path: Path) -> PipelineDefinition:
    """Load a pipeline definition from a JSON file."""
    return PipelineDefinition.model_validate_json(Path(path).read_text(encoding="utf-8"))


def dump_definition(definition: PipelineDefinition, path: Path) -> Path:
    """Write a pipeline definition to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(definition.to_json(), encoding="utf-8")
    return path
