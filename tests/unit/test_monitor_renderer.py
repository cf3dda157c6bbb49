"""Unit tests for the MonitorRenderer: Rich panels, state labels and graph tables."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cdpipe.core.pipeline_graph import PipelineGraph
from cdpipe.models.actions import ActionState
from cdpipe.models.execution import ExecutionStatus
from cdpipe.monitor.projection import ActionStatus, MonitorSnapshot, StageStatus
from cdpipe.monitor.renderer import _STATE_LABELS, MonitorRenderer, status_label


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(
    status: ExecutionStatus = ExecutionStatus.RUNNING,
    chain_valid: bool = True,
    failure: dict | None = None,
) -> MonitorSnapshot:
    return MonitorSnapshot(
        run_id="cd-test-run-001",
        pipeline_name="MeerkatsPipeline",
        revision="r1",
        status=status,
        stages=[
            StageStatus(
                name="Source",
                actions=[
                    ActionStatus(
                        action_id="Source/Source_GitHub",
                        kind="deploy_source",
                        state=ActionState.SUCCEEDED,
                        artifacts=["SourceOutput"],
                    )
                ],
            ),
            StageStatus(
                name="Deploy",
                actions=[
                    ActionStatus(
                        action_id="Deploy/Deploy_DynamoDB_Stack",
                        kind="deploy_stack",
                        state=ActionState.FAILED if failure else ActionState.RUNNING,
                        error="DeployApplyFailed: rolled back" if failure else None,
                    )
                ],
            ),
        ],
        failure=failure,
        chain_valid=chain_valid,
        last_updated=datetime(2026, 2, 27, 12, 0, 0, tzinfo=timezone.utc),
    )


def _render_text(renderable) -> str:
    console = Console(record=True, width=160, force_terminal=False)
    console.print(renderable)
    return console.export_text()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestLabels:
    def test_every_action_state_has_a_label(self):
        assert set(_STATE_LABELS) == set(ActionState)

    @pytest.mark.parametrize("status", list(ExecutionStatus))
    def test_every_status_has_a_label(self, status):
        assert status.value.replace("_", " ").upper() in status_label(status).upper()


class TestRenderSnapshot:
    def test_returns_panel(self):
        assert isinstance(MonitorRenderer().render_snapshot(_make_snapshot()), Panel)

    def test_contains_actions_and_summary(self):
        text = _render_text(MonitorRenderer().render_snapshot(_make_snapshot()))
        assert "MeerkatsPipeline" in text
        assert "Source_GitHub" in text
        assert "Deploy_DynamoDB_Stack" in text
        assert "-> SourceOutput" in text
        assert "RUNNING" in text
        assert "Stages: 1/2" in text
        assert "valid" in text

    def test_broken_chain(self):
        text = _render_text(MonitorRenderer().render_snapshot(_make_snapshot(chain_valid=False)))
        assert "BROKEN" in text

    def test_failure_line(self):
        failure = {
            "error": "DeployApplyFailed",
            "action_id": "Deploy/Deploy_DynamoDB_Stack",
            "message": "Stack rolled back",
        }
        snapshot = _make_snapshot(status=ExecutionStatus.FAILED, failure=failure)
        text = _render_text(MonitorRenderer().render_snapshot(snapshot))
        assert "DeployApplyFailed in Deploy/Deploy_DynamoDB_Stack: Stack rolled back" in text


class TestRenderGraph:
    def test_lists_tiers(self, definition):
        table = MonitorRenderer().render_graph(PipelineGraph(definition))
        assert isinstance(table, Table)

        text = _render_text(table)
        assert "Pipeline MeerkatsPipeline" in text
        assert "run order 5" in text
        assert "Integ_Test" in text
        assert "ApiGwStackOutputs" in text


class TestPrinting:
    def test_print_chain_verification(self):
        console = Console(record=True, width=120)
        renderer = MonitorRenderer(console=console)
        renderer.print_chain_verification("cd-1", True)
        renderer.print_chain_verification("cd-2", False)
        text = console.export_text()
        assert "Hash chain for run cd-1 is valid." in text
        assert "Hash chain for run cd-2 is BROKEN!" in text

    def test_render_live_stops_at_terminal_status(self):
        class _Projection:
            def __init__(self):
                self.calls = 0

            def snapshot(self, run_id):
                self.calls += 1
                status = ExecutionStatus.RUNNING if self.calls < 2 else ExecutionStatus.SUCCEEDED
                return _make_snapshot(status=status)

        projection = _Projection()
        console = Console(record=True, width=160)
        MonitorRenderer(console=console).render_live("cd-1", projection, refresh_hz=50)
        assert projection.calls == 2
