"""Tests for the command-line interface."""

import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from joule.cli import app
from joule.config import config
from joule.kernel.budget import BudgetManager
from joule.kernel.trace import TraceLogger
from joule.storage.traces import SQLiteTraceRepository

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_cli_logging():
    """Drop handlers bound to a previous invocation's captured stderr."""
    yield
    logging.getLogger("joule").handlers.clear()


@pytest.fixture
def trace_db(tmp_path: Path, monkeypatch) -> Path:
    """Point the CLI at a trace database holding one trace."""
    db_path = tmp_path / "joule.sqlite"
    budgets = BudgetManager()
    envelope_id = budgets.create_envelope()
    tracer = TraceLogger(repository=SQLiteTraceRepository(db_path))
    trace_id = tracer.create_trace("trace_cli", "task_cli", budgets.get_envelope(envelope_id))
    span = tracer.start_span(trace_id, "task-execution", {"taskId": "task_cli"})
    tracer.end_span(trace_id, span)
    tracer.get_trace(trace_id, budgets.get_usage(envelope_id))
    monkeypatch.setattr(config, "db_path", db_path)
    return db_path


class TestRunCommand:
    """Tests for `joule run`."""

    def test_run_with_fake_provider(self):
        result = runner.invoke(app, ["run", "hello", "--fake"])

        assert result.exit_code == 0
        assert "completed" in result.output
        assert "Trace:" in result.output

    def test_run_json(self):
        result = runner.invoke(
            app, ["--log-level", "ERROR", "run", "hello", "--fake", "--json", "--budget", "low"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert "trace" not in data

    def test_unknown_budget(self):
        result = runner.invoke(app, ["run", "hello", "--fake", "--budget", "bogus"])

        assert result.exit_code == 1


class TestBudgetCommand:
    def test_presets(self):
        result = runner.invoke(app, ["budget", "presets"])

        assert result.exit_code == 0
        for name in ("low:", "medium:", "high:", "unlimited:"):
            assert name in result.output
        assert "max_tool_calls: 10" in result.output


class TestTraceCommands:
    """Tests for `joule trace`."""

    def test_missing_database(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(config, "db_path", tmp_path / "absent.sqlite")

        result = runner.invoke(app, ["trace", "list"])

        assert result.exit_code == 1

    def test_list(self, trace_db):
        result = runner.invoke(app, ["trace", "list"])

        assert result.exit_code == 0
        assert "[trace_cli] task=task_cli" in result.output

    def test_list_filtered_empty(self, trace_db):
        result = runner.invoke(app, ["trace", "list", "--task", "other"])

        assert result.exit_code == 0
        assert "No traces found" in result.output

    def test_show(self, trace_db):
        result = runner.invoke(app, ["trace", "show", "trace_cli"])

        assert result.exit_code == 0
        assert "task-execution" in result.output
        assert "task_cli" in result.output

    def test_show_unknown(self, trace_db):
        result = runner.invoke(app, ["trace", "show", "nope"])

        assert result.exit_code == 1
