"""Stage/tier scheduler: interprets a pipeline graph for one execution.

Stages run strictly in order; within a stage, tiers run in order and the
actions of one tier run concurrently on a thread pool.  The scheduler
advances only when every action of the current tier SUCCEEDED (or was
SKIPPED).  The first failure in a tier:

- cancels tier members that have not started;
- signals running members, which stop if their kind is interruptible;
- lets the other running members finish and discards their artifacts;
- ends the execution FAILED once the tier has drained.

A self-mutation that applied a new definition ends the execution
RESTARTED.  An abort request ends it ABORTED at the next tier boundary.
An action that exceeds its timeout is FAILED at once; if its kind is not
interruptible the tier still waits for it to return and drops its result.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from cdpipe.actions import ActionContext, ActionOutcome, BaseAction, create_action
from cdpipe.core.artifact_registry import ArtifactRegistry
from cdpipe.core.definition_store import DefinitionStore
from cdpipe.core.errors import (
    ActionCancelled,
    ActionInterrupted,
    ActionTimeout,
    PipelineError,
)
from cdpipe.core.pipeline_graph import PipelineGraph, PlannedAction
from cdpipe.core.state_machine import ExecutionStateMachine
from cdpipe.models.actions import COMPLETED_ACTION_STATES, ActionState
from cdpipe.models.execution import ExecutionResult, ExecutionStatus
from cdpipe.models.pipeline import PipelineDefinition
from cdpipe.providers import Collaborators

logger = logging.getLogger(__name__)


class _TierResult:
    def __init__(self) -> None:
        self.failure: PipelineError | None = None
        self.restart_requested = False


class PipelineScheduler:
    """Runs executions of a pipeline, one at a time.

    Parameters
    ----------
    state_machine:
        Records and validates every transition.
    registry:
        Artifact registry shared by all executions.
    definition_store:
        Deployed-definition store handed to self-mutation.
    collaborators:
        External capabilities used by the actions.
    max_parallel_actions:
        Thread pool size for one tier.
    default_timeout_seconds:
        Timeout for actions that declare none (``None``: no timeout).
    clock:
        Monotonic clock used for timeout deadlines.
    credential_ref:
        Secret name handed to the source provider.
    """

    def __init__(
        self,
        state_machine: ExecutionStateMachine,
        registry: ArtifactRegistry,
        definition_store: DefinitionStore,
        collaborators: Collaborators,
        *,
        max_parallel_actions: int = 4,
        default_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        credential_ref: str = "",
    ) -> None:
        self._machine = state_machine
        self._registry = registry
        self._definitions = definition_store
        self._collaborators = collaborators
        self._max_parallel = max(1, max_parallel_actions)
        self._default_timeout = default_timeout_seconds
        self._clock = clock
        self._credential_ref = credential_ref
        self._tier_cancel: threading.Event | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        run_id: str,
        revision: str,
        definition: PipelineDefinition,
        *,
        abort_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run a fresh execution to a terminal state."""
        graph = PipelineGraph(definition)
        self._machine.start_execution(
            run_id,
            pipeline_name=definition.name,
            revision=revision,
            definition_hash=definition.definition_hash,
            action_ids=graph.action_ids,
        )
        logger.info("Execution %s started for revision %s", run_id, revision)
        return self._drive(run_id, revision, graph, abort_event or threading.Event())

    def resume(
        self,
        run_id: str,
        definition: PipelineDefinition,
        *,
        abort_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Continue a non-terminal execution from its first unfinished tier.

        Actions found RUNNING were interrupted mid-flight; since their
        effects are unknown the execution fails with ``ActionInterrupted``.
        """
        snapshot = self._machine.snapshot(run_id)
        if snapshot.status != ExecutionStatus.RUNNING:
            raise ValueError(
                f"Execution {run_id} is {snapshot.status.value}, not resumable"
            )
        if snapshot.definition_hash != definition.definition_hash:
            raise ValueError(
                f"Execution {run_id} ran under definition {snapshot.definition_hash}, "
                f"not {definition.definition_hash}"
            )

        graph = PipelineGraph(definition)
        self._registry.load_run(run_id)

        interrupted = [
            aid for aid, state in snapshot.action_states.items()
            if state == ActionState.RUNNING
        ]
        if interrupted:
            failure: PipelineError | None = None
            for action_id in interrupted:
                planned = graph.get_action(action_id)
                error = ActionInterrupted(
                    "Found running when the execution was resumed",
                    action_id=action_id,
                    kind=planned.kind.value,
                )
                self._machine.transition_action(
                    run_id, action_id, ActionState.FAILED,
                    kind=planned.kind.value, detail=error.to_detail(),
                )
                failure = failure or error
            return self._finish(run_id, snapshot.revision, ExecutionStatus.FAILED, failure)

        logger.info("Execution %s resumed at stage %d", run_id, snapshot.stage_index)
        return self._drive(run_id, snapshot.revision, graph, abort_event or threading.Event())

    def interrupt(self) -> None:
        """Signal interruptible actions of the running tier to stop."""
        with self._lock:
            if self._tier_cancel is not None:
                self._tier_cancel.set()

    def _drive(
        self,
        run_id: str,
        revision: str,
        graph: PipelineGraph,
        abort_event: threading.Event,
    ) -> ExecutionResult:
        for stage in graph.stages:
            for tier_index, tier in enumerate(stage.tiers):
                remaining = [
                    a for a in tier
                    if self._machine.get_action_state(run_id, a.action_id)
                    not in COMPLETED_ACTION_STATES
                ]
                if not remaining:
                    continue
                if abort_event.is_set():
                    return self._finish(run_id, revision, ExecutionStatus.ABORTED)

                self._machine.enter_tier(run_id, stage.name, stage.index, tier_index)
                logger.info(
                    "Execution %s: stage %s tier %d (%d action(s))",
                    run_id, stage.name, tier_index, len(remaining),
                )
                result = self._run_tier(run_id, revision, graph.definition, remaining)

                if result.failure is not None:
                    if abort_event.is_set() and isinstance(result.failure, ActionCancelled):
                        return self._finish(run_id, revision, ExecutionStatus.ABORTED)
                    return self._finish(
                        run_id, revision, ExecutionStatus.FAILED, result.failure
                    )
                if abort_event.is_set():
                    return self._finish(run_id, revision, ExecutionStatus.ABORTED)
                if result.restart_requested:
                    return self._finish(run_id, revision, ExecutionStatus.RESTARTED)

        return self._finish(run_id, revision, ExecutionStatus.SUCCEEDED)

    def _finish(
        self,
        run_id: str,
        revision: str,
        status: ExecutionStatus,
        failure: PipelineError | None = None,
    ) -> ExecutionResult:
        detail = failure.to_detail() if failure is not None else None
        self._machine.finish_execution(run_id, status, failure=detail)
        snapshot = self._machine.snapshot(run_id)
        if failure is not None:
            logger.error("Execution %s %s: %s", run_id, status.value, failure)
        else:
            logger.info("Execution %s %s", run_id, status.value)
        return ExecutionResult(
            run_id=run_id,
            revision=revision,
            status=status,
            stage_index=snapshot.stage_index,
            failure=detail,
        )

    # ------------------------------------------------------------------
    # Tier execution
    # ------------------------------------------------------------------

    def _run_tier(
        self,
        run_id: str,
        revision: str,
        definition: PipelineDefinition,
        planned: list[PlannedAction],
    ) -> _TierResult:
        cancel_event = threading.Event()
        with self._lock:
            self._tier_cancel = cancel_event
        context = ActionContext(
            run_id=run_id,
            revision=revision,
            definition=definition,
            registry=self._registry,
            collaborators=self._collaborators,
            definition_store=self._definitions,
            cancel_event=cancel_event,
            credential_ref=self._credential_ref,
        )
        result = _TierResult()
        started_at: dict[str, float] = {}
        start_lock = threading.Lock()

        def _start(action: BaseAction) -> ActionOutcome | None:
            # Runs on a worker thread.  Returning None means "never started".
            with start_lock:
                if cancel_event.is_set():
                    return None
                self._machine.transition_action(
                    run_id, action.action_id, ActionState.RUNNING, kind=action.kind.value
                )
                started_at[action.action_id] = self._clock()
            return action.run(context)

        pool = ThreadPoolExecutor(
            max_workers=min(len(planned), self._max_parallel),
            thread_name_prefix=f"cdpipe-{run_id[-8:]}",
        )
        futures: dict[Future, BaseAction] = {}
        try:
            for item in planned:
                action = create_action(item)
                futures[pool.submit(_start, action)] = action

            pending = set(futures)
            # Timed out but not interruptible: already FAILED, still applying.
            overdue: set[Future] = set()
            while pending or overdue:
                done, _ = wait(
                    pending | overdue,
                    timeout=self._next_wait(futures, pending, started_at, start_lock),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    if future in overdue:
                        overdue.discard(future)
                        self._discard_late(run_id, futures[future], future)
                    else:
                        pending.discard(future)
                        self._settle(run_id, futures[future], future, result, cancel_event)

                for future in self._expired(futures, pending, started_at, start_lock):
                    pending.discard(future)
                    action = futures[future]
                    timeout = self._timeout_for(action)
                    error = ActionTimeout(
                        f"Exceeded timeout of {timeout:g}s",
                        action_id=action.action_id,
                        kind=action.kind.value,
                    )
                    self._fail(run_id, action, error, result, cancel_event)
                    if not action.interruptible:
                        overdue.add(future)

                if result.failure is not None:
                    with start_lock:
                        cancel_event.set()
                    for future in list(pending):
                        action = futures[future]
                        if action.action_id not in started_at:
                            future.cancel()
                            pending.discard(future)
                            self._machine.transition_action(
                                run_id, action.action_id, ActionState.CANCELLED,
                                kind=action.kind.value,
                                detail={"reason": "sibling failed"},
                            )
        finally:
            with self._lock:
                self._tier_cancel = None
            # Only timed-out interruptible actions can still be running here.
            pool.shutdown(wait=False, cancel_futures=True)

        return result

    def _settle(
        self,
        run_id: str,
        action: BaseAction,
        future: Future,
        result: _TierResult,
        cancel_event: threading.Event,
    ) -> None:
        """Record the terminal state of a finished action."""
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            outcome = future.result()
            if outcome is None:
                # Picked up by a worker after the tier was cancelled.
                self._machine.transition_action(
                    run_id, action.action_id, ActionState.CANCELLED,
                    kind=action.kind.value, detail={"reason": "sibling failed"},
                )
                return
            discarded = result.failure is not None
            self._machine.transition_action(
                run_id, action.action_id, outcome.state,
                kind=action.kind.value,
                detail={**outcome.detail, "discarded": discarded} if discarded else outcome.detail,
            )
            if discarded:
                self._registry.discard(run_id, action.action_id)
            else:
                self._registry.seal(run_id, action.action_id)
                result.restart_requested = result.restart_requested or outcome.restart_requested
            return

        if not isinstance(error, PipelineError):
            # BaseAction.run classifies every Exception; anything else is a bug.
            error = PipelineError(
                repr(error), action_id=action.action_id, kind=action.kind.value, cause=error
            )
        if isinstance(error, ActionCancelled):
            self._machine.transition_action(
                run_id, action.action_id, ActionState.CANCELLED,
                kind=action.kind.value, detail=error.to_detail(),
            )
            self._registry.discard(run_id, action.action_id)
            if result.failure is None:
                result.failure = error
                cancel_event.set()
            return
        self._fail(run_id, action, error, result, cancel_event)

    def _discard_late(self, run_id: str, action: BaseAction, future: Future) -> None:
        """Drop whatever a timed-out action produced once it finally returns."""
        self._registry.discard(run_id, action.action_id)
        error = future.exception()
        logger.warning(
            "%s finished after its timeout (%s); result discarded",
            action.action_id,
            "failed" if error is not None else future.result().state.value,
        )

    def _fail(
        self,
        run_id: str,
        action: BaseAction,
        error: PipelineError,
        result: _TierResult,
        cancel_event: threading.Event,
    ) -> None:
        self._machine.transition_action(
            run_id, action.action_id, ActionState.FAILED,
            kind=action.kind.value, detail=error.to_detail(),
        )
        self._registry.discard(run_id, action.action_id)
        logger.error("%s failed: %s", action.action_id, error)
        if result.failure is None or isinstance(result.failure, ActionCancelled):
            result.failure = error
        cancel_event.set()

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def _timeout_for(self, action: BaseAction) -> float | None:
        return action.definition.timeout_seconds or self._default_timeout

    def _deadlines(
        self,
        futures: dict[Future, BaseAction],
        pending: set[Future],
        started_at: dict[str, float],
        start_lock: threading.Lock,
    ) -> dict[Future, float]:
        deadlines: dict[Future, float] = {}
        with start_lock:
            for future in pending:
                action = futures[future]
                timeout = self._timeout_for(action)
                if timeout is not None and action.action_id in started_at:
                    deadlines[future] = started_at[action.action_id] + timeout
        return deadlines

    def _next_wait(self, futures, pending, started_at, start_lock) -> float | None:
        deadlines = self._deadlines(futures, pending, started_at, start_lock)
        has_unstarted_timeouts = any(
            self._timeout_for(futures[f]) is not None
            and futures[f].action_id not in started_at
            for f in pending
        )
        if not deadlines:
            # Re-check soon if a queued action with a timeout may start meanwhile.
            return 0.05 if has_unstarted_timeouts else None
        wait_for = max(0.0, min(deadlines.values()) - self._clock())
        return min(wait_for, 0.05) if has_unstarted_timeouts else wait_for

    def _expired(self, futures, pending, started_at, start_lock) -> list[Future]:
        now = self._clock()
        return [
            f for f, deadline in self._deadlines(futures, pending, started_at, start_lock).items()
            if now >= deadline and not f.done()
        ]
