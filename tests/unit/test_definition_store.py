"""Tests for the DefinitionStore: append-only deployed definitions."""

from __future__ import annotations

import pytest

from cdpipe.core.definition_store import DefinitionStore
from cdpipe.core.run_ledger import ExecutionLedger


class TestDefinitionStore:
    def test_empty_store(self, ledger: ExecutionLedger):
        store = DefinitionStore(ledger, "TestPipeline")
        assert store.current() is None
        assert store.current_hash() is None
        assert store.history() == []

    def test_apply_and_current(self, ledger: ExecutionLedger, make_definition):
        store = DefinitionStore(ledger, "TestPipeline")
        definition = make_definition()
        assert store.apply(definition) == definition.definition_hash
        assert store.current() == definition

    def test_reapply_is_noop(self, ledger: ExecutionLedger, make_definition):
        store = DefinitionStore(ledger, "TestPipeline")
        definition = make_definition()
        store.apply(definition)
        store.apply(definition)
        assert store.history() == [definition.definition_hash]

    def test_versions_append(self, ledger: ExecutionLedger, make_definition):
        store = DefinitionStore(ledger, "TestPipeline")
        v1 = make_definition()
        v2 = make_definition(restart_execution_on_update=False)
        store.apply(v1)
        store.apply(v2)
        store.apply(v1)
        assert store.history() == [v1.definition_hash, v2.definition_hash, v1.definition_hash]
        assert store.current_hash() == v1.definition_hash

    def test_other_pipeline_rejected(self, ledger: ExecutionLedger, make_definition):
        store = DefinitionStore(ledger, "TestPipeline")
        with pytest.raises(ValueError, match="cannot replace"):
            store.apply(make_definition(name="Other"))
