"""Tests for the collaborator implementations: in-memory and local."""

from __future__ import annotations

import json
import re
import threading

import pytest

from cdpipe.core.errors import SourceUnavailable
from cdpipe.models.pipeline import SourceIdentity
from cdpipe.providers import (
    Builder,
    Collaborators,
    CommandRunner,
    SourceProvider,
    StackDeployer,
)
from cdpipe.providers.local import (
    LocalDirectorySource,
    ShellBuilder,
    SubprocessCommandRunner,
)
from cdpipe.providers.memory import (
    CallLog,
    InMemoryBuilder,
    InMemoryCommandRunner,
    InMemorySourceProvider,
    InMemoryStackDeployer,
)

REPO = SourceIdentity(owner="NetaNir", repo="meerkats")


class TestProtocols:
    def test_in_memory_collaborators_conform(self):
        assert isinstance(InMemorySourceProvider(), SourceProvider)
        assert isinstance(InMemoryBuilder(), Builder)
        assert isinstance(InMemoryStackDeployer(), StackDeployer)
        assert isinstance(InMemoryCommandRunner(), CommandRunner)

    def test_local_collaborators_conform(self, tmp_path):
        assert isinstance(LocalDirectorySource(tmp_path), SourceProvider)
        assert isinstance(ShellBuilder(), Builder)
        assert isinstance(SubprocessCommandRunner(), CommandRunner)

    def test_require_missing_collaborator(self):
        with pytest.raises(LookupError, match="deployer"):
            Collaborators(source=InMemorySourceProvider()).require("deployer")


class TestCallLog:
    def test_records_in_order(self):
        log = CallLog()
        log.record("a", x=1)
        log.record("b")
        log.record("a", x=2)
        assert len(log) == 3
        assert [c["x"] for c in log.ops("a")] == [1, 2]
        assert all("at" in c for c in log)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class TestInMemorySource:
    def test_empty_repository(self):
        assert InMemorySourceProvider().poll(REPO, "token") is None

    def test_push_moves_head(self):
        source = InMemorySourceProvider()
        source.push("r1", {"a": b"1"})
        source.push("r2", {"a": b"2"})
        assert source.poll(REPO, "token") == "r2"
        assert source.fetch(REPO, "r1", "token") == {"a": b"1"}

    def test_unknown_revision(self):
        with pytest.raises(SourceUnavailable, match="no revision"):
            InMemorySourceProvider().fetch(REPO, "nope", "token")

    def test_unavailable(self):
        source = InMemorySourceProvider()
        source.unavailable = True
        with pytest.raises(SourceUnavailable, match="unreachable"):
            source.poll(REPO, "token")


class TestInMemoryBuilder:
    def test_default_output_is_source(self):
        result = InMemoryBuilder().run({"a": b"1"}, ["synth"])
        assert result.exit_code == 0
        assert result.files == {"a": b"1"}
        assert "$ synth" in result.log

    def test_exit_code(self):
        assert InMemoryBuilder(exit_code=2).run({}, ["synth"]).exit_code == 2

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        result = InMemoryBuilder(delay=5.0).run({}, ["synth"], cancel_event=cancel)
        assert result.exit_code == 130


class TestInMemoryStackDeployer:
    TEMPLATE = json.dumps({"Outputs": {"Url": "https://x"}}).encode()

    def test_deploy_then_no_changes(self):
        deployer = InMemoryStackDeployer()
        first = deployer.create_change_set("S", self.TEMPLATE)
        assert first.changes == ["Add"]
        deployer.execute_change_set(first)

        second = deployer.create_change_set("S", self.TEMPLATE)
        assert second.is_empty
        assert deployer.deployed_hash("S") == first.template_hash

    def test_modified_template(self):
        deployer = InMemoryStackDeployer()
        deployer.execute_change_set(deployer.create_change_set("S", self.TEMPLATE))
        assert deployer.create_change_set("S", b"{}").changes == ["Modify"]

    def test_outputs_come_from_template(self):
        deployer = InMemoryStackDeployer()
        deployer.execute_change_set(deployer.create_change_set("S", self.TEMPLATE))
        assert deployer.current_outputs("S") == {"Url": "https://x"}
        assert deployer.current_outputs("Other") == {}

    def test_failed_apply_leaves_stack_untouched(self):
        deployer = InMemoryStackDeployer()
        deployer.fail_stacks.add("S")
        with pytest.raises(RuntimeError, match="rolled back"):
            deployer.execute_change_set(deployer.create_change_set("S", self.TEMPLATE))
        assert deployer.deployed_hash("S") is None
        assert [c["op"] for c in deployer.calls] == [
            "create_change_set", "execute_start", "execute_failed",
        ]

    def test_failed_change_set(self):
        deployer = InMemoryStackDeployer()
        deployer.fail_change_sets.add("S")
        with pytest.raises(RuntimeError, match="invalid"):
            deployer.create_change_set("S", self.TEMPLATE)


class TestInMemoryCommandRunner:
    def test_handler_decides(self):
        runner = InMemoryCommandRunner(lambda commands, files, env: 0 if env.get("X") else 1)
        assert runner.run(["check"], {}, env={"X": "1"}) == 0
        assert runner.run(["check"], {}) == 1
        assert [c["env"] for c in runner.calls.ops("run")] == [{"X": "1"}, {}]

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        assert InMemoryCommandRunner(delay=5.0).run(["x"], {}, cancel_event=cancel) == 130


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------


class TestShellBuilder:
    def test_collects_output_dir(self):
        result = ShellBuilder().run(
            {"app.txt": b"hello"},
            ["cp app.txt cdk.out/app.txt"],
            install_commands=["mkdir -p cdk.out"],
        )
        assert result.exit_code == 0
        assert result.files == {"app.txt": b"hello"}

    def test_whole_checkout_without_output_dir(self):
        result = ShellBuilder(output_dir=None).run(
            {"src/a.txt": b"a"}, ["echo b > b.txt"]
        )
        assert result.files == {"src/a.txt": b"a", "b.txt": b"b\n"}

    def test_failing_install_stops_build(self):
        result = ShellBuilder().run({}, ["echo built"], install_commands=["echo oops; exit 3"])
        assert result.exit_code == 3
        assert "oops" in result.log
        assert "built" not in result.log

    def test_cancellation_terminates_process(self):
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        result = ShellBuilder().run({}, ["sleep 10"], cancel_event=cancel)
        timer.cancel()
        assert result.exit_code == 130

    def test_refuses_paths_outside_tree(self):
        with pytest.raises(ValueError, match="outside"):
            ShellBuilder().run({"../evil": b"x"}, ["true"])


class TestSubprocessCommandRunner:
    def test_env_and_files(self):
        runner = SubprocessCommandRunner()
        code = runner.run(
            ['test "$API_GW_URL" = https://x', "grep -q Url outputs.json"],
            {"outputs.json": b'{"Url": "https://x"}'},
            env={"API_GW_URL": "https://x"},
        )
        assert code == 0

    def test_exit_code(self):
        assert SubprocessCommandRunner().run(["exit 22"], {}) == 22


class TestLocalDirectorySource:
    def test_revision_tracks_content(self, tmp_path):
        (tmp_path / "a.txt").write_text("1")
        source = LocalDirectorySource(tmp_path)

        first = source.poll(REPO, "token")
        assert re.fullmatch(r"[0-9a-f]{12}", first)
        assert source.poll(REPO, "token") == first

        (tmp_path / "a.txt").write_text("2")
        second = source.poll(REPO, "token")
        assert second != first
        assert source.fetch(REPO, second, "token") == {"a.txt": b"2"}

    def test_stale_revision(self, tmp_path):
        (tmp_path / "a.txt").write_text("1")
        source = LocalDirectorySource(tmp_path)
        first = source.poll(REPO, "token")
        (tmp_path / "a.txt").write_text("2")
        with pytest.raises(SourceUnavailable, match="no longer the head"):
            source.fetch(REPO, first, "token")

    def test_empty_directory(self, tmp_path):
        assert LocalDirectorySource(tmp_path).poll(REPO, "token") is None

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            LocalDirectorySource(tmp_path / "missing").poll(REPO, "token")
