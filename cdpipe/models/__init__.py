"""cdpipe data models: all Pydantic v2, all frozen (immutable)."""

from cdpipe.models.actions import (
    COMPLETED_ACTION_STATES,
    VALID_ACTION_TRANSITIONS,
    ActionDefinition,
    ActionKind,
    ActionState,
    OutputBinding,
)
from cdpipe.models.artifacts import Artifact, ArtifactManifest, ArtifactRef
from cdpipe.models.execution import (
    TERMINAL_STATUSES,
    VALID_EXECUTION_TRANSITIONS,
    ExecutionResult,
    ExecutionSnapshot,
    ExecutionStatus,
)
from cdpipe.models.ledger import EventType, LedgerEntry
from cdpipe.models.pipeline import (
    PipelineDefinition,
    SourceIdentity,
    StageDefinition,
    TriggerMode,
    TriggerPolicy,
    dump_definition,
    load_definition,
)

__all__ = [
    # actions
    "ActionDefinition",
    "ActionKind",
    "ActionState",
    "OutputBinding",
    "VALID_ACTION_TRANSITIONS",
    "COMPLETED_ACTION_STATES",
    # artifacts
    "Artifact",
    "ArtifactManifest",
    "ArtifactRef",
    # execution
    "ExecutionResult",
    "ExecutionSnapshot",
    "ExecutionStatus",
    "VALID_EXECUTION_TRANSITIONS",
    "TERMINAL_STATUSES",
    # ledger
    "EventType",
    "LedgerEntry",
    # pipeline
    "PipelineDefinition",
    "SourceIdentity",
    "StageDefinition",
    "TriggerMode",
    "TriggerPolicy",
    "load_definition",
    "dump_definition",
]
