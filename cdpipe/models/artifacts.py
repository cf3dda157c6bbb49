"""Artifact models (immutable once produced)."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRef(BaseModel):
    """Handle to an artifact produced within one run.

    Identity is logical: ``(run_id, producer, name)``.  A re-run produces a
    new ref under a new ``run_id`` and never aliases an older one.
    ``location`` is the content address of the artifact's file manifest.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    run_id: str
    producer: str  # "<stage>/<action>"
    location: str  # "sha256:<hex>" of the manifest
    payload: dict[str, str] | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def artifact_id(self) -> str:
        return f"{self.run_id}/{self.producer}/{self.name}"


class ArtifactManifest(BaseModel):
    """Relative file path -> content address of that file's bytes."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, str] = {}


class Artifact(BaseModel):
    """A resolved artifact: its handle plus file contents."""

    model_config = ConfigDict(frozen=True)

    ref: ArtifactRef
    files: dict[str, bytes] = {}

    @property
    def payload(self) -> dict[str, str]:
        return dict(self.ref.payload or {})
