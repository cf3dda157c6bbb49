"""Unit tests for the CLI: Typer command registration and behavior.

Exercises command registration, help output, definition validation and
the demo/monitor/runs round trip via typer.testing.CliRunner.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from cdpipe.blueprints import standard_pipeline
from cdpipe.cli.app import app
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.models.pipeline import dump_definition

runner = CliRunner()


@pytest.fixture
def demo_paths(tmp_path: Path) -> list[str]:
    return [
        "--ledger", str(tmp_path / "demo.db"),
        "--artifacts", str(tmp_path / "artifacts"),
    ]


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer's no_args_is_help may exit with 0 or 2 depending on version
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("validate", "demo", "monitor", "runs"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["validate", "demo", "monitor", "runs"])
    def test_command_help(self, command):
        assert runner.invoke(app, [command, "--help"]).exit_code == 0


# ---------------------------------------------------------------------------
# Test: validate
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid_definition(self, tmp_path):
        path = dump_definition(standard_pipeline(), tmp_path / "pipeline.json")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 0
        assert "Pipeline MeerkatsPipeline is valid" in result.output

    def test_schema_error(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text(json.dumps({"name": "", "stages": []}))
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Invalid definition" in result.output

    def test_graph_error(self, tmp_path):
        data = standard_pipeline().model_dump(mode="json")
        data["stages"][3]["actions"][0]["inputs"] = ["Missing"]
        path = tmp_path / "pipeline.json"
        path.write_text(json.dumps(data))

        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Invalid pipeline" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "nope.json")])
        assert result.exit_code != 0


# ---------------------------------------------------------------------------
# Test: demo / runs / monitor
# ---------------------------------------------------------------------------


class TestDemo:
    def test_demo_succeeds(self, demo_paths, tmp_path):
        result = runner.invoke(app, ["demo", *demo_paths])
        assert result.exit_code == 0, result.output
        assert "SUCCEEDED" in result.output

        ledger = ExecutionLedger(tmp_path / "demo.db")
        assert len(ledger.get_all_run_ids()) == 1

    def test_demo_failing_stack(self, demo_paths):
        result = runner.invoke(app, ["demo", "--fail-stack", "DDBStack", *demo_paths])
        assert result.exit_code == 1
        assert "FAILED" in result.output
        assert "DeployApplyFailed" in result.output

    def test_demo_mutation_restarts(self, demo_paths, tmp_path):
        result = runner.invoke(app, ["demo", "--mutate", *demo_paths])
        assert result.exit_code == 0, result.output
        assert "RESTARTED" in result.output
        assert "SUCCEEDED" in result.output

        ledger = ExecutionLedger(tmp_path / "demo.db")
        assert len(ledger.get_all_run_ids()) == 2


class TestRunsAndMonitor:
    def test_runs_missing_ledger(self, tmp_path):
        result = runner.invoke(app, ["runs", "--ledger", str(tmp_path / "none.db")])
        assert result.exit_code == 1
        assert "Ledger not found" in result.output

    def test_runs_lists_demo_execution(self, demo_paths, tmp_path):
        runner.invoke(app, ["demo", *demo_paths])
        [run_id] = ExecutionLedger(tmp_path / "demo.db").get_all_run_ids()

        result = runner.invoke(
            app, ["runs", "--ledger", str(tmp_path / "demo.db")], env={"COLUMNS": "200"}
        )
        assert result.exit_code == 0
        assert run_id in result.output

    def test_monitor_shows_run(self, demo_paths, tmp_path):
        runner.invoke(app, ["demo", *demo_paths])
        [run_id] = ExecutionLedger(tmp_path / "demo.db").get_all_run_ids()

        result = runner.invoke(
            app,
            ["monitor", run_id, "--verify-chain", "--ledger", str(tmp_path / "demo.db")],
        )
        assert result.exit_code == 0
        assert "is valid" in result.output
        assert "Integ_Test" in result.output

    def test_monitor_unknown_run(self, demo_paths, tmp_path):
        runner.invoke(app, ["demo", *demo_paths])
        result = runner.invoke(
            app, ["monitor", "cd-nope", "--ledger", str(tmp_path / "demo.db")]
        )
        assert result.exit_code == 1
        assert "Run not found" in result.output
        assert "Available runs" in result.output
