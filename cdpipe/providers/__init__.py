"""External collaborators: protocols plus in-memory and local implementations."""

from __future__ import annotations

from cdpipe.providers.protocols import (
    Builder,
    BuildResult,
    ChangeSet,
    CommandRunner,
    DeployedState,
    SourceProvider,
    StackDeployer,
)


class Collaborators:
    """The set of external capabilities an execution may call.

    Any of them may be omitted when the pipeline has no action needing it;
    ``require`` fails loudly when an action reaches for a missing one.
    """

    def __init__(
        self,
        *,
        source: SourceProvider | None = None,
        builder: Builder | None = None,
        deployer: StackDeployer | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.source = source
        self.builder = builder
        self.deployer = deployer
        self.runner = runner

    def require(self, name: str):
        value = getattr(self, name)
        if value is None:
            raise LookupError(f"No {name} collaborator configured")
        return value


__all__ = [
    "Builder",
    "BuildResult",
    "ChangeSet",
    "Collaborators",
    "CommandRunner",
    "DeployedState",
    "SourceProvider",
    "StackDeployer",
]
