"""Artifact production, sealing and consumption for pipeline runs.

Producing an artifact only *stages* it.  The scheduler seals an action's
staged artifacts after the action reaches SUCCEEDED; only sealed handles
resolve.  Staged artifacts of an action whose result is discarded are
dropped and never become visible.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping

from cdpipe.core.artifact_store import ContentAddressedStore
from cdpipe.core.errors import ArtifactNotReady, OutputKeyMissing
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.models.artifacts import Artifact, ArtifactRef
from cdpipe.models.ledger import EventType, LedgerEntry

logger = logging.getLogger(__name__)


class ArtifactRegistry:
    """Tracks staged and sealed artifacts per run.

    Parameters
    ----------
    store:
        Blob store holding artifact file trees.
    ledger:
        Durable store for sealed artifact metadata and seal events.
    """

    def __init__(self, store: ContentAddressedStore, ledger: ExecutionLedger) -> None:
        self._store = store
        self._ledger = ledger
        self._lock = threading.Lock()
        # (run_id, producer) -> staged refs
        self._staged: dict[tuple[str, str], list[ArtifactRef]] = {}
        # run_id -> name -> sealed ref
        self._sealed: dict[str, dict[str, ArtifactRef]] = {}

    # ------------------------------------------------------------------
    # Produce / seal
    # ------------------------------------------------------------------

    def produce(
        self,
        run_id: str,
        producer: str,
        name: str,
        files: Mapping[str, bytes],
        payload: Mapping[str, str] | None = None,
    ) -> ArtifactRef:
        """Stage an artifact produced by *producer*; unresolvable until sealed."""
        ref = ArtifactRef(
            name=name,
            run_id=run_id,
            producer=producer,
            location=self._store.store_files(files),
            payload=dict(payload) if payload is not None else None,
        )
        with self._lock:
            if name in self._sealed.get(run_id, {}):
                raise ValueError(f"Artifact {name!r} already produced in run {run_id}")
            self._staged.setdefault((run_id, producer), []).append(ref)
        logger.debug("Staged artifact %s from %s", ref.artifact_id, producer)
        return ref

    def seal(self, run_id: str, producer: str) -> list[ArtifactRef]:
        """Make the artifacts staged by *producer* resolvable and durable."""
        with self._lock:
            refs = self._staged.pop((run_id, producer), [])
            for ref in refs:
                self._sealed.setdefault(run_id, {})[ref.name] = ref
        for ref in refs:
            self._ledger.record_artifact(ref)
            stage_name, _, action_name = producer.partition("/")
            self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    event_type=EventType.ARTIFACT,
                    stage_name=stage_name,
                    action_name=action_name,
                    detail={"artifact": ref.name, "location": ref.location},
                    artifact_references=[ref.location],
                )
            )
            logger.info("Sealed artifact %s", ref.artifact_id)
        return refs

    def discard(self, run_id: str, producer: str) -> None:
        """Drop staged artifacts of an action whose result is not kept."""
        with self._lock:
            dropped = self._staged.pop((run_id, producer), [])
        if dropped:
            logger.info(
                "Discarded %d staged artifact(s) of %s", len(dropped), producer
            )

    # ------------------------------------------------------------------
    # Resolve / consume
    # ------------------------------------------------------------------

    def is_ready(self, run_id: str, name: str) -> bool:
        with self._lock:
            return name in self._sealed.get(run_id, {})

    def resolve(self, run_id: str, name: str, *, consumer: str = "") -> ArtifactRef:
        """Return the sealed handle for *name* or raise ``ArtifactNotReady``."""
        with self._lock:
            ref = self._sealed.get(run_id, {}).get(name)
        if ref is None:
            raise ArtifactNotReady(
                f"Artifact {name!r} of run {run_id} has not been produced",
                action_id=consumer,
            )
        return ref

    def consume(self, run_id: str, name: str, *, consumer: str = "") -> Artifact:
        """Resolve *name* and load its files."""
        ref = self.resolve(run_id, name, consumer=consumer)
        logger.debug("%s consumes %s", consumer or "<anonymous>", ref.artifact_id)
        return Artifact(ref=ref, files=self._store.load_files(ref.location))

    def get_output(
        self, run_id: str, name: str, key: str, *, consumer: str = ""
    ) -> str:
        """Return one value of a structured-output artifact."""
        ref = self.resolve(run_id, name, consumer=consumer)
        payload = ref.payload or {}
        if key not in payload:
            raise OutputKeyMissing(
                f"Artifact {name!r} has no output {key!r} "
                f"(available: {sorted(payload)})",
                action_id=consumer,
            )
        return payload[key]

    def sealed(self, run_id: str) -> list[ArtifactRef]:
        with self._lock:
            return list(self._sealed.get(run_id, {}).values())

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def load_run(self, run_id: str) -> list[ArtifactRef]:
        """Reload the sealed artifacts of *run_id* from the ledger."""
        refs = self._ledger.get_artifacts(run_id)
        with self._lock:
            self._sealed[run_id] = {ref.name: ref for ref in refs}
        return refs
