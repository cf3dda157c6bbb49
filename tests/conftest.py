"""Shared test fixtures for cdpipe."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cdpipe.blueprints import sample_source_files, standard_pipeline
from cdpipe.config import Settings
from cdpipe.core.artifact_registry import ArtifactRegistry
from cdpipe.core.artifact_store import ContentAddressedStore
from cdpipe.core.definition_store import DefinitionStore
from cdpipe.core.orchestrator import Orchestrator
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.core.state_machine import ExecutionStateMachine
from cdpipe.models.actions import ActionDefinition, ActionKind
from cdpipe.models.pipeline import (
    PipelineDefinition,
    SourceIdentity,
    StageDefinition,
    TriggerPolicy,
)
from cdpipe.providers import Collaborators
from cdpipe.providers.memory import (
    InMemoryBuilder,
    InMemoryCommandRunner,
    InMemorySourceProvider,
    InMemoryStackDeployer,
)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> ExecutionLedger:
    """Provide a fresh ExecutionLedger backed by a temp SQLite database."""
    return ExecutionLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "artifacts")


@pytest.fixture
def registry(
    artifact_store: ContentAddressedStore, ledger: ExecutionLedger
) -> ArtifactRegistry:
    return ArtifactRegistry(artifact_store, ledger)


@pytest.fixture
def state_machine(ledger: ExecutionLedger) -> ExecutionStateMachine:
    return ExecutionStateMachine(ledger)


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "cd-test-run-001"


@pytest.fixture
def settings(tmp_dir: Path) -> Settings:
    """Settings pointing every path into the temp directory."""
    return Settings(
        ledger_path=tmp_dir / "ledger.db",
        artifact_store_path=tmp_dir / "artifacts",
    )


# ---------------------------------------------------------------------------
# Pipeline definitions
# ---------------------------------------------------------------------------


@pytest.fixture
def definition() -> PipelineDefinition:
    """The standard Source/Build/Self_Mutation/Deploy pipeline."""
    return standard_pipeline()


@pytest.fixture
def definition_store(
    ledger: ExecutionLedger, definition: PipelineDefinition
) -> DefinitionStore:
    """A definition store with the standard pipeline deployed."""
    store = DefinitionStore(ledger, definition.name)
    store.apply(definition, applied_by="test")
    return store


@pytest.fixture
def make_definition() -> Callable[..., PipelineDefinition]:
    """Factory fixture: a minimal valid pipeline with custom deploy actions.

    Stages are Source, Build, Self_Mutation and Deploy; ``deploy_actions``
    replaces the Deploy stage's actions.  Every deploy reads "build".
    """

    def _factory(
        deploy_actions: list[ActionDefinition] | None = None,
        *,
        name: str = "TestPipeline",
        **overrides: Any,
    ) -> PipelineDefinition:
        deploy_actions = deploy_actions or [
            ActionDefinition(
                name="Deploy_A", kind=ActionKind.DEPLOY_STACK, inputs=["build"], stack="A"
            )
        ]
        defaults: dict[str, Any] = {
            "name": name,
            "trigger": TriggerPolicy(source=SourceIdentity(owner="o", repo="r")),
            "stages": [
                StageDefinition(
                    name="Source",
                    actions=[
                        ActionDefinition(name="Src", kind=ActionKind.SOURCE, output="source")
                    ],
                ),
                StageDefinition(
                    name="Build",
                    actions=[
                        ActionDefinition(
                            name="Synth",
                            kind=ActionKind.BUILD,
                            inputs=["source"],
                            output="build",
                            commands=["synth"],
                        )
                    ],
                ),
                StageDefinition(
                    name="Self_Mutation",
                    actions=[
                        ActionDefinition(
                            name="Self_Mutate", kind=ActionKind.SELF_MUTATE, inputs=["build"]
                        )
                    ],
                ),
                StageDefinition(name="Deploy", actions=deploy_actions),
            ],
        }
        defaults.update(overrides)
        return PipelineDefinition(**defaults)

    return _factory


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def source() -> InMemorySourceProvider:
    return InMemorySourceProvider()


@pytest.fixture
def builder() -> InMemoryBuilder:
    return InMemoryBuilder()


@pytest.fixture
def deployer() -> InMemoryStackDeployer:
    return InMemoryStackDeployer()


@pytest.fixture
def runner() -> InMemoryCommandRunner:
    return InMemoryCommandRunner()


@pytest.fixture
def collaborators(
    source: InMemorySourceProvider,
    builder: InMemoryBuilder,
    deployer: InMemoryStackDeployer,
    runner: InMemoryCommandRunner,
) -> Collaborators:
    return Collaborators(source=source, builder=builder, deployer=deployer, runner=runner)


@pytest.fixture
def make_orchestrator(
    settings: Settings, collaborators: Collaborators
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator over temp storage and in-memory collaborators."""

    def _factory(definition: PipelineDefinition | None = None) -> Orchestrator:
        return Orchestrator(definition or standard_pipeline(), collaborators, config=settings)

    return _factory


@pytest.fixture
def push_revision(source: InMemorySourceProvider) -> Callable[..., None]:
    """Factory fixture: push a revision of the sample service to the source."""

    def _push(
        revision: str,
        definition: PipelineDefinition | None = None,
        **overrides: Any,
    ) -> None:
        source.push(revision, sample_source_files(definition or standard_pipeline(), **overrides))

    return _push
