"""Deployed pipeline definitions: append-only versions keyed by content hash.

The definition currently driving executions is the latest applied
version.  Self-mutation appends a new version; nothing is overwritten.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)


class DefinitionStore:
    """Versioned store of a pipeline's deployed definition.

    Parameters
    ----------
    ledger:
        Durable backing store.
    pipeline_name:
        The pipeline whose definitions this store tracks.
    """

    def __init__(self, ledger: ExecutionLedger, pipeline_name: str) -> None:
        self._ledger = ledger
        self.pipeline_name = pipeline_name

    def current(self) -> PipelineDefinition | None:
        """Return the deployed definition, or ``None`` before the first deploy."""
        latest = self._ledger.latest_definition(self.pipeline_name)
        if latest is None:
            return None
        return PipelineDefinition.model_validate_json(latest[1])

    def current_hash(self) -> str | None:
        latest = self._ledger.latest_definition(self.pipeline_name)
        return latest[0] if latest else None

    def apply(self, definition: PipelineDefinition, *, applied_by: str = "") -> str:
        """Deploy *definition*; return its hash.  Re-applying the current
        definition is a no-op."""
        if definition.name != self.pipeline_name:
            raise ValueError(
                f"Definition for {definition.name!r} cannot replace "
                f"pipeline {self.pipeline_name!r}"
            )
        definition_hash = definition.definition_hash
        if definition_hash == self.current_hash():
            return definition_hash
        self._ledger.record_definition(
            self.pipeline_name,
            definition_hash,
            definition.to_json(),
            applied_by=applied_by,
            applied_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Applied definition %s for pipeline %s (by %s)",
            definition_hash[:19],
            self.pipeline_name,
            applied_by or "operator",
        )
        return definition_hash

    def history(self) -> list[str]:
        return self._ledger.definition_history(self.pipeline_name)
