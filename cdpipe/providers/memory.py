"""In-memory collaborators for demos and tests.

Each collaborator records its calls in ``calls`` (thread-safe) and supports
failure injection, so scenarios like "the data stack fails to deploy" or
"the build takes longer than its timeout" can be scripted without any
external system.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from cdpipe.core.errors import SourceUnavailable
from cdpipe.core.hasher import sha256_hex
from cdpipe.models.pipeline import SourceIdentity
from cdpipe.providers.protocols import BuildResult, ChangeSet, DeployedState


class CallLog:
    """Append-only, thread-safe record of collaborator calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: list[dict[str, Any]] = []

    def record(self, op: str, **fields: Any) -> None:
        with self._lock:
            self._calls.append({"op": op, "at": time.monotonic(), **fields})

    def __iter__(self):
        with self._lock:
            return iter(list(self._calls))

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)

    def ops(self, op: str) -> list[dict[str, Any]]:
        return [c for c in self if c["op"] == op]


def _sleep(seconds: float, cancel_event: threading.Event | None) -> bool:
    """Sleep up to *seconds*; return True if cancelled meanwhile."""
    if seconds <= 0:
        return bool(cancel_event and cancel_event.is_set())
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class InMemorySourceProvider:
    """A repository whose revisions are pushed by the test or demo."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._revisions: dict[str, dict[str, bytes]] = {}
        self._head: str | None = None
        self.unavailable = False
        self.fetch_delay = 0.0
        self.calls = CallLog()

    def push(self, revision: str, files: Mapping[str, bytes]) -> None:
        """Record *revision* and make it the head."""
        with self._lock:
            self._revisions[revision] = dict(files)
            self._head = revision

    @property
    def head(self) -> str | None:
        with self._lock:
            return self._head

    def poll(self, source: SourceIdentity, credential_ref: str) -> str | None:
        self.calls.record("poll", source=str(source))
        if self.unavailable:
            raise SourceUnavailable(f"{source} is unreachable")
        return self.head

    def fetch(
        self, source: SourceIdentity, revision: str, credential_ref: str
    ) -> dict[str, bytes]:
        self.calls.record("fetch", source=str(source), revision=revision)
        if self.unavailable:
            raise SourceUnavailable(f"{source} is unreachable")
        _sleep(self.fetch_delay, None)
        with self._lock:
            files = self._revisions.get(revision)
        if files is None:
            raise SourceUnavailable(f"{source} has no revision {revision!r}")
        return dict(files)


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class InMemoryBuilder:
    """Builder whose "synthesis" is a function of the source tree.

    By default the build output is the source tree itself, which lets a
    source revision carry ready-made templates and ``pipeline.json``.
    """

    def __init__(
        self,
        synthesize: Callable[[dict[str, bytes]], dict[str, bytes]] | None = None,
        *,
        exit_code: int = 0,
        delay: float = 0.0,
    ) -> None:
        self.synthesize = synthesize or (lambda files: dict(files))
        self.exit_code = exit_code
        self.delay = delay
        self.calls = CallLog()

    def run(
        self,
        source_files: Mapping[str, bytes],
        commands: list[str],
        *,
        install_commands: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        self.calls.record(
            "build", commands=list(commands), install_commands=list(install_commands or [])
        )
        cancelled = _sleep(self.delay, cancel_event)
        if cancelled:
            return BuildResult(exit_code=130, log="interrupted")
        log = "\n".join(f"$ {c}" for c in [*(install_commands or []), *commands])
        if self.exit_code != 0:
            return BuildResult(exit_code=self.exit_code, log=log + "\nbuild failed")
        return BuildResult(exit_code=0, files=self.synthesize(dict(source_files)), log=log)


# ---------------------------------------------------------------------------
# Stack deployment
# ---------------------------------------------------------------------------


class InMemoryStackDeployer:
    """Stacks whose state is the hash of the last applied template.

    Templates are JSON documents; their ``Outputs`` object (``{key: value}``)
    becomes the stack's outputs once deployed.  ``fail_stacks`` makes the
    apply step of the named stacks fail; ``delays`` slows applies down per
    stack.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._deployed: dict[str, str] = {}
        self._outputs: dict[str, dict[str, str]] = {}
        self._pending: dict[str, bytes] = {}
        self.fail_stacks: set[str] = set()
        self.fail_change_sets: set[str] = set()
        self.delays: dict[str, float] = {}
        self.calls = CallLog()

    def deployed_hash(self, stack: str) -> str | None:
        with self._lock:
            return self._deployed.get(stack)

    def create_change_set(self, stack: str, template: bytes) -> ChangeSet:
        self.calls.record("create_change_set", stack=stack)
        if stack in self.fail_change_sets:
            raise RuntimeError(f"Template for {stack} is invalid")
        template_hash = sha256_hex(template)
        with self._lock:
            current = self._deployed.get(stack)
            change_set = ChangeSet(
                stack=stack,
                changes=[] if current == template_hash else ["Modify" if current else "Add"],
                template_hash=template_hash,
            )
            self._pending[change_set.change_set_id] = template
        return change_set

    def execute_change_set(self, change_set: ChangeSet) -> DeployedState:
        stack = change_set.stack
        self.calls.record("execute_start", stack=stack)
        _sleep(self.delays.get(stack, 0.0), None)
        if stack in self.fail_stacks:
            self.calls.record("execute_failed", stack=stack)
            raise RuntimeError(f"Stack {stack} rolled back: resource creation failed")
        with self._lock:
            template = self._pending.pop(change_set.change_set_id)
            self._deployed[stack] = change_set.template_hash
            self._outputs[stack] = _template_outputs(template)
        self.calls.record("execute_end", stack=stack)
        return DeployedState(
            stack=stack, status="UPDATE_COMPLETE", template_hash=change_set.template_hash
        )

    def current_outputs(self, stack: str) -> dict[str, str]:
        self.calls.record("current_outputs", stack=stack)
        with self._lock:
            return dict(self._outputs.get(stack, {}))


def _template_outputs(template: bytes) -> dict[str, str]:
    try:
        document = json.loads(template)
    except ValueError:
        return {}
    outputs = document.get("Outputs", {}) if isinstance(document, dict) else {}
    return {str(k): str(v) for k, v in outputs.items()}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class InMemoryCommandRunner:
    """Command runner that records what it was asked to run.

    ``handler`` decides the exit code from ``(commands, files, env)``;
    without one every run exits with ``exit_code``.
    """

    def __init__(
        self,
        handler: Callable[[list[str], dict[str, bytes], dict[str, str]], int] | None = None,
        *,
        exit_code: int = 0,
        delay: float = 0.0,
    ) -> None:
        self.handler = handler
        self.exit_code = exit_code
        self.delay = delay
        self.calls = CallLog()

    def run(
        self,
        commands: list[str],
        working_files: Mapping[str, bytes],
        *,
        env: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        env = dict(env or {})
        self.calls.record(
            "run", commands=list(commands), files=sorted(working_files), env=env
        )
        if _sleep(self.delay, cancel_event):
            return 130
        if self.handler is not None:
            return self.handler(list(commands), dict(working_files), env)
        return self.exit_code
