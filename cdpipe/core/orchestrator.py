"""Pipeline orchestrator: the central coordinator for cdpipe executions.

The Orchestrator wires together the ExecutionLedger, ContentAddressedStore,
ArtifactRegistry, DefinitionStore, ExecutionStateMachine and
PipelineScheduler into a single pipeline, and owns the trigger policy:

- a revision arriving while idle starts a fresh execution;
- a revision arriving while an execution is in flight is recorded as the
  single pending revision (latest wins) and runs once the current
  execution reaches a terminal state;
- with ``supersede_in_flight`` the in-flight execution is aborted instead
  of being allowed to finish;
- after a self-mutation the next execution runs under the newly deployed
  definition.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone

from cdpipe.config import Settings
from cdpipe.core.artifact_registry import ArtifactRegistry
from cdpipe.core.artifact_store import ContentAddressedStore
from cdpipe.core.definition_store import DefinitionStore
from cdpipe.core.errors import SourceUnavailable
from cdpipe.core.pipeline_graph import PipelineGraph
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.core.scheduler import PipelineScheduler
from cdpipe.core.state_machine import ExecutionStateMachine
from cdpipe.models.execution import ExecutionResult, ExecutionSnapshot, ExecutionStatus
from cdpipe.models.ledger import EventType, LedgerEntry
from cdpipe.models.pipeline import PipelineDefinition
from cdpipe.providers import Collaborators

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"cd-{ts}-{uuid.uuid4().hex[:6]}"


class Orchestrator:
    """Central pipeline orchestrator.

    Parameters
    ----------
    definition:
        The bootstrap pipeline definition.  Applied to the definition store
        only when nothing is deployed for its pipeline yet; a definition
        deployed earlier (possibly by self-mutation) is kept.  Use
        ``deploy()`` to replace it explicitly.
    collaborators:
        External capabilities used by the actions and the source poller.
    config:
        Runtime settings.  Uses ``Settings()`` if not provided.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        collaborators: Collaborators,
        *,
        config: Settings | None = None,
    ) -> None:
        self.config = config or Settings()
        PipelineGraph(definition)

        # Core subsystems
        self.ledger = ExecutionLedger(self.config.ledger_path)
        self.artifact_store = ContentAddressedStore(self.config.artifact_store_path)
        self.registry = ArtifactRegistry(self.artifact_store, self.ledger)
        self.definitions = DefinitionStore(self.ledger, definition.name)
        self.state_machine = ExecutionStateMachine(self.ledger)
        self.collaborators = collaborators
        self.scheduler = PipelineScheduler(
            self.state_machine,
            self.registry,
            self.definitions,
            collaborators,
            max_parallel_actions=self.config.max_parallel_actions,
            default_timeout_seconds=self.config.default_action_timeout_seconds,
            credential_ref=self.config.source_token_secret_name,
        )
        deployed = self.definitions.current_hash()
        if deployed is None:
            self.definitions.apply(definition, applied_by="operator")
        elif deployed != definition.definition_hash:
            logger.info(
                "Keeping deployed definition %s for pipeline %s",
                deployed[:19],
                definition.name,
            )

        # Trigger state
        self._lock = threading.Lock()
        self._running = False
        self._pending: str | None = None
        self._abort_event = threading.Event()
        self._current_run_id: str | None = None
        self._last_seen_revision: str | None = None

    @property
    def pipeline_name(self) -> str:
        return self.definitions.pipeline_name

    @property
    def definition(self) -> PipelineDefinition:
        """The currently deployed definition."""
        current = self.definitions.current()
        if current is None:
            raise LookupError(f"No definition deployed for {self.pipeline_name!r}")
        return current

    def deploy(self, definition: PipelineDefinition, *, applied_by: str = "operator") -> str:
        """Replace the deployed definition outside of self-mutation."""
        PipelineGraph(definition)
        with self._lock:
            if self._running:
                raise RuntimeError("Cannot deploy while an execution is in flight")
            return self.definitions.apply(definition, applied_by=applied_by)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, revision: str) -> list[ExecutionResult]:
        """React to a new source revision.

        When idle, runs executions in the calling thread until no revision
        is pending and returns their results.  When an execution is already
        in flight, records *revision* as pending and returns immediately with
        an empty list; the thread running the in-flight execution picks it up.
        """
        with self._lock:
            if self._running:
                replaced = self._pending
                self._pending = revision
                supersede = self.definition.trigger.supersede_in_flight
                self._record_trigger(
                    revision,
                    "superseding" if supersede else "queued",
                    replaced=replaced,
                )
                if supersede:
                    self._abort_event.set()
                    self.scheduler.interrupt()
                return []
            self._running = True
            self._pending = revision
            self._record_trigger(revision, "started")
        return self._drain()

    def _drain(self) -> list[ExecutionResult]:
        results: list[ExecutionResult] = []
        try:
            while True:
                with self._lock:
                    revision = self._pending
                    self._pending = None
                    if revision is None:
                        return results
                    self._abort_event = threading.Event()
                    run_id = new_run_id()
                    self._current_run_id = run_id
                    abort_event = self._abort_event

                definition = self.definition
                result = self.scheduler.execute(
                    run_id, revision, definition, abort_event=abort_event
                )
                results.append(result)

                if result.status == ExecutionStatus.RESTARTED:
                    updated = self.definition
                    logger.info(
                        "Pipeline %s updated to %s",
                        self.pipeline_name,
                        updated.definition_hash[:19],
                    )
                    if updated.restart_execution_on_update:
                        with self._lock:
                            if self._pending is None:
                                self._pending = revision
        finally:
            with self._lock:
                self._running = False
                self._current_run_id = None

    def _record_trigger(
        self, revision: str, disposition: str, *, replaced: str | None = None
    ) -> None:
        detail = {"revision": revision, "disposition": disposition}
        if replaced:
            detail["replaced"] = replaced
        self.ledger.append(
            LedgerEntry(
                run_id=self.trigger_log_id,
                event_type=EventType.TRIGGER,
                detail=detail,
            )
        )
        logger.info("Revision %s %s", revision, disposition)

    @property
    def trigger_log_id(self) -> str:
        """Ledger stream holding the trigger records of this pipeline."""
        return f"triggers:{self.pipeline_name}"

    def abort(self) -> bool:
        """Abort the in-flight execution, if any.

        The execution stops at its next tier boundary; interruptible running
        actions are signalled.  A pending revision still runs afterwards.
        """
        with self._lock:
            if not self._running:
                return False
            self._abort_event.set()
            run_id = self._current_run_id
        self.scheduler.interrupt()
        logger.warning("Abort requested for execution %s", run_id)
        return True

    # ------------------------------------------------------------------
    # Source polling
    # ------------------------------------------------------------------

    def poll_once(self) -> list[ExecutionResult]:
        """Ask the source provider for its head revision and trigger on change.

        Provider failures are logged and retried on the next poll.
        """
        policy = self.definition.trigger
        provider = self.collaborators.require("source")
        try:
            revision = provider.poll(policy.source, self.config.source_token_secret_name)
        except SourceUnavailable as exc:
            logger.warning("Polling %s failed: %s", policy.source, exc)
            return []
        except Exception as exc:
            error = SourceUnavailable(f"Polling {policy.source} failed", cause=exc)
            logger.warning("%s", error)
            return []

        if revision is None:
            return []
        with self._lock:
            if revision == self._last_seen_revision:
                return []
            self._last_seen_revision = revision
        return self.trigger(revision)

    def run_polling(self, stop_event: threading.Event) -> None:
        """Poll at the trigger policy's interval until *stop_event* is set."""
        while not stop_event.is_set():
            self.poll_once()
            stop_event.wait(self.definition.trigger.poll_interval_seconds)

    # ------------------------------------------------------------------
    # Resume / queries
    # ------------------------------------------------------------------

    def resume(self, run_id: str) -> ExecutionResult:
        """Continue an execution interrupted by a process restart."""
        snapshot = self.state_machine.snapshot(run_id)
        definition = self.definition
        if snapshot.definition_hash != definition.definition_hash:
            raise ValueError(
                f"Execution {run_id} ran under a superseded definition; "
                f"trigger {snapshot.revision} again instead"
            )
        with self._lock:
            if self._running:
                raise RuntimeError("An execution is already in flight")
            self._running = True
            self._abort_event = threading.Event()
            self._current_run_id = run_id
            abort_event = self._abort_event
        try:
            return self.scheduler.resume(run_id, definition, abort_event=abort_event)
        finally:
            with self._lock:
                self._running = False
                self._current_run_id = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def pending_revision(self) -> str | None:
        with self._lock:
            return self._pending

    def get_execution(self, run_id: str) -> ExecutionSnapshot:
        return self.state_machine.snapshot(run_id)

    def list_runs(self) -> list[str]:
        return self.ledger.get_all_run_ids()

    def verify_chain(self, run_id: str) -> bool:
        return self.ledger.verify_chain(run_id)
