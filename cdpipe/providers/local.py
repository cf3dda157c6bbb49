"""Local collaborators backed by the filesystem and subprocesses.

``ShellBuilder`` and ``SubprocessCommandRunner`` materialize the input
files into a scratch directory, run each command through ``/bin/sh`` and
collect the results.  Both poll the cancel event while a command runs and
terminate the process group when it is set.  ``LocalDirectorySource``
serves a working tree on disk as a source repository whose revision is
the content hash of its files.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
from collections.abc import Mapping
from pathlib import Path

from cdpipe.core.errors import SourceUnavailable
from cdpipe.core.hasher import content_address, sha256_hex
from cdpipe.models.pipeline import SourceIdentity
from cdpipe.providers.protocols import BuildResult

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_CANCELLED_EXIT = 130


def _materialize(root: Path, files: Mapping[str, bytes]) -> None:
    for rel, data in files.items():
        target = (root / rel).resolve()
        if root.resolve() not in target.parents:
            raise ValueError(f"Refusing to write outside the work tree: {rel!r}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


def _collect(root: Path) -> dict[str, bytes]:
    if not root.is_dir():
        return {}
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def _run_script(
    commands: list[str],
    cwd: Path,
    *,
    env: Mapping[str, str] | None = None,
    cancel_event: threading.Event | None = None,
) -> tuple[int, str]:
    """Run *commands* as one shell script; return (exit code, combined output)."""
    script = "\n".join(commands)
    proc = subprocess.Popen(
        ["/bin/sh", "-c", script],
        cwd=cwd,
        env={**os.environ, **(env or {})},
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=True,
    )
    while True:
        try:
            output, _ = proc.communicate(timeout=_POLL_SECONDS)
            return proc.returncode, output or ""
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Terminating process %d on cancellation", proc.pid)
                os.killpg(proc.pid, signal.SIGTERM)
                output, _ = proc.communicate()
                return _CANCELLED_EXIT, output or ""


class ShellBuilder:
    """Run install and build commands over a checkout in a scratch directory.

    Parameters
    ----------
    output_dir:
        Directory (relative to the checkout) collected as the build output,
        e.g. ``"cdk.out"``.  ``None`` collects the whole checkout.
    """

    def __init__(self, output_dir: str | None = "cdk.out") -> None:
        self.output_dir = output_dir

    def run(
        self,
        source_files: Mapping[str, bytes],
        commands: list[str],
        *,
        install_commands: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        with tempfile.TemporaryDirectory(prefix="cdpipe-build-") as tmp:
            root = Path(tmp)
            _materialize(root, source_files)
            log_parts: list[str] = []
            for phase in (install_commands or [], commands):
                if not phase:
                    continue
                code, output = _run_script(phase, root, cancel_event=cancel_event)
                log_parts.append(output)
                if code != 0:
                    return BuildResult(exit_code=code, log="".join(log_parts))
            out = root / self.output_dir if self.output_dir else root
            return BuildResult(exit_code=0, files=_collect(out), log="".join(log_parts))


class SubprocessCommandRunner:
    """Run commands in a scratch directory holding the working files."""

    def run(
        self,
        commands: list[str],
        working_files: Mapping[str, bytes],
        *,
        env: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        with tempfile.TemporaryDirectory(prefix="cdpipe-run-") as tmp:
            root = Path(tmp)
            _materialize(root, working_files)
            code, output = _run_script(commands, root, env=env, cancel_event=cancel_event)
        if output:
            logger.info("Command output:\n%s", output.rstrip())
        return code


class LocalDirectorySource:
    """A directory on disk served as a single-branch repository.

    The revision is derived from the content of the tree, so any change to
    the files is a new revision.  Only the head revision can be fetched.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _snapshot(self, source: SourceIdentity) -> tuple[str, dict[str, bytes]]:
        if not self.root.is_dir():
            raise SourceUnavailable(f"{source}: {self.root} is not a directory")
        files = _collect(self.root)
        digest = content_address({rel: sha256_hex(data) for rel, data in files.items()})
        return digest.split(":", 1)[1][:12], files

    def poll(self, source: SourceIdentity, credential_ref: str) -> str | None:
        revision, files = self._snapshot(source)
        return revision if files else None

    def fetch(
        self, source: SourceIdentity, revision: str, credential_ref: str
    ) -> dict[str, bytes]:
        head, files = self._snapshot(source)
        if head != revision:
            raise SourceUnavailable(
                f"{source}: revision {revision} is no longer the head ({head})"
            )
        return files
