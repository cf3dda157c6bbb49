"""Collaborator protocols consumed by the pipeline core.

The core never provisions anything itself.  It drives four external
capabilities (source control, build, stack deployment and command
execution) through these Protocols, and observes success/failure plus
produced files and outputs.  Implementations signal failure either by
raising or, for builds and commands, by a non-zero exit code.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from cdpipe.models.pipeline import SourceIdentity


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class BuildResult(BaseModel):
    """Outcome of one build run."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    files: dict[str, bytes] = {}
    log: str = ""


class ChangeSet(BaseModel):
    """A computed diff between a stack's desired and current state."""

    model_config = ConfigDict(frozen=True)

    stack: str
    change_set_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    changes: list[str] = []
    template_hash: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.changes


class DeployedState(BaseModel):
    """State of a stack after a change set was applied."""

    model_config = ConfigDict(frozen=True)

    stack: str
    status: str = "UPDATE_COMPLETE"
    template_hash: str = ""


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class SourceProvider(Protocol):
    """Source control access.

    ``credential_ref`` names the secret to authenticate with; providers
    resolve it themselves and must not echo it into files or errors.
    """

    def poll(self, source: SourceIdentity, credential_ref: str) -> str | None:
        """Return the head revision of *source*, or ``None`` if it has none."""
        ...

    def fetch(
        self, source: SourceIdentity, revision: str, credential_ref: str
    ) -> dict[str, bytes]:
        """Return the file tree of *source* at *revision*."""
        ...


@runtime_checkable
class Builder(Protocol):
    """Runs install and build commands against a source tree."""

    def run(
        self,
        source_files: Mapping[str, bytes],
        commands: list[str],
        *,
        install_commands: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        ...


@runtime_checkable
class StackDeployer(Protocol):
    """Deploys infrastructure stacks from templates."""

    def create_change_set(self, stack: str, template: bytes) -> ChangeSet:
        ...

    def execute_change_set(self, change_set: ChangeSet) -> DeployedState:
        ...

    def current_outputs(self, stack: str) -> dict[str, str]:
        ...


@runtime_checkable
class CommandRunner(Protocol):
    """Runs shell-style commands over a set of working files."""

    def run(
        self,
        commands: list[str],
        working_files: Mapping[str, bytes],
        *,
        env: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Run *commands* in order; return the exit status (0 on success)."""
        ...
