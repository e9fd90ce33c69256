"""Tests for the CLI interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from sikg.cli import main


@pytest.fixture
def runner():
    return CliRunner()


def init_args(project: Path) -> list[str]:
    return [
        "init", "--path", str(project),
        "--code", str(project / "code.json"),
        "--tests", str(project / "tests.json"),
    ]


@pytest.fixture
def initialized_project(tmp_project: Path) -> Path:
    """A tmp_project with a built graph and a policy threshold low enough to select."""
    runner = CliRunner()
    result = runner.invoke(
        main, ["config", "set", "propagation.high_impact_threshold", "0.4", "--path", str(tmp_project)]
    )
    assert result.exit_code == 0, f"Config failed: {result.output}"
    result = runner.invoke(main, init_args(tmp_project))
    assert result.exit_code == 0, f"Init failed: {result.output}"
    return tmp_project


def write_results(project: Path, **statuses: str) -> Path:
    path = project / "results.json"
    path.write_text(json.dumps([
        {"test_id": tid, "status": status, "execution_time": 500}
        for tid, status in statuses.items()
    ]))
    return path


class TestCLIInit:
    def test_init_basic(self, runner: CliRunner, tmp_project: Path):
        result = runner.invoke(main, init_args(tmp_project))
        assert result.exit_code == 0
        assert "Initializing" in result.output

    def test_init_creates_sikg_dir(self, runner: CliRunner, tmp_project: Path):
        runner.invoke(main, init_args(tmp_project))
        assert (tmp_project / ".sikg" / "config.json").exists()
        assert (tmp_project / ".sikg" / "graph.json").exists()
        assert (tmp_project / ".sikg" / "rl_state.json").exists()

    def test_init_requires_records(self, runner: CliRunner, tmp_project: Path):
        result = runner.invoke(main, ["init", "--path", str(tmp_project)])
        assert result.exit_code != 0

    def test_init_invalid_records(self, runner: CliRunner, tmp_project: Path):
        (tmp_project / "code.json").write_text('[{"name": 3}]')
        result = runner.invoke(main, init_args(tmp_project))
        assert result.exit_code == 1
        assert "Invalid" in result.output


class TestCLIStatus:
    def test_status(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, ["status", "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "No pending cycle" in result.output

    def test_status_no_graph(self, runner: CliRunner, tmp_path: Path):
        result = runner.invoke(main, ["status", "--path", str(tmp_path)])
        assert result.exit_code != 0


class TestCLICycle:
    def test_select_json(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, [
            "select", str(initialized_project / "changes.json"),
            "--path", str(initialized_project), "--json",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["selected_tests"] == ["test_hash", "test_login"]
        assert data["session_id"]
        assert set(data["impacts"]) == {"test_hash", "test_login", "test_checkout"}

    def test_select_table(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, [
            "select", str(initialized_project / "changes.json"), "--path", str(initialized_project),
        ])
        assert result.exit_code == 0
        assert "test_hash" in result.output
        assert "Selected 2" in result.output

    def test_select_limit(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, [
            "select", str(initialized_project / "changes.json"),
            "--path", str(initialized_project), "--limit", "1", "--json",
        ])
        assert json.loads(result.output)["selected_tests"] == ["test_hash"]

    def test_second_select_rejected(self, runner: CliRunner, initialized_project: Path):
        args = ["select", str(initialized_project / "changes.json"), "--path", str(initialized_project)]
        assert runner.invoke(main, args).exit_code == 0
        result = runner.invoke(main, args)
        assert result.exit_code == 1
        assert "in progress" in result.output

    def test_feedback_closes_cycle(self, runner: CliRunner, initialized_project: Path):
        runner.invoke(main, [
            "select", str(initialized_project / "changes.json"), "--path", str(initialized_project),
        ])
        status = runner.invoke(main, ["status", "--path", str(initialized_project)])
        assert "Pending cycle" in status.output

        results = write_results(initialized_project, test_hash="failed", test_login="passed")
        result = runner.invoke(main, ["feedback", str(results), "--path", str(initialized_project)])
        assert result.exit_code == 0, result.output
        assert "Feedback processed" in result.output

        status = runner.invoke(main, ["status", "--path", str(initialized_project)])
        assert "No pending cycle" in status.output

    def test_feedback_without_cycle(self, runner: CliRunner, initialized_project: Path):
        results = write_results(initialized_project, test_hash="passed")
        result = runner.invoke(main, ["feedback", str(results), "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "No pending cycle" in result.output

    def test_feedback_invalid_file(self, runner: CliRunner, initialized_project: Path):
        results = initialized_project / "results.json"
        results.write_text('[{"test_id": "test_hash", "status": "exploded"}]')
        result = runner.invoke(main, ["feedback", str(results), "--path", str(initialized_project)])
        assert result.exit_code == 1

    def test_abort(self, runner: CliRunner, initialized_project: Path):
        runner.invoke(main, [
            "select", str(initialized_project / "changes.json"), "--path", str(initialized_project),
        ])
        result = runner.invoke(main, ["abort", "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "aborted" in result.output
        assert not (initialized_project / ".sikg" / "session.json").exists()


class TestCLIPolicy:
    def test_policy(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, ["policy", "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "Selection Policy" in result.output

    def test_export_and_import_state(self, runner: CliRunner, initialized_project: Path):
        target = initialized_project / "state.json"
        result = runner.invoke(main, ["export-state", str(target), "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert json.loads(target.read_text())["version"] == 1

        result = runner.invoke(main, ["import-state", str(target), "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "imported" in result.output

    def test_import_malformed_state(self, runner: CliRunner, initialized_project: Path):
        source = initialized_project / "state.json"
        source.write_text('"nonsense"')
        result = runner.invoke(main, ["import-state", str(source), "--path", str(initialized_project)])
        assert result.exit_code == 0
        assert "reset to defaults" in result.output

    def test_export_graph(self, runner: CliRunner, initialized_project: Path):
        target = initialized_project / "viz.json"
        result = runner.invoke(main, ["export-graph", str(target), "--path", str(initialized_project)])
        assert result.exit_code == 0
        data = json.loads(target.read_text())
        assert {"nodes", "links"} <= set(data)


class TestCLIConfig:
    def test_config_show(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(main, ["config", "show", "--path", str(initialized_project)])
        assert result.exit_code == 0

    def test_config_set_get(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(
            main, ["config", "set", "rl.exploration_rate", "0.2", "--path", str(initialized_project)]
        )
        assert result.exit_code == 0
        result = runner.invoke(
            main, ["config", "get", "rl.exploration_rate", "--path", str(initialized_project)]
        )
        assert "0.2" in result.output

    def test_config_unknown_key(self, runner: CliRunner, initialized_project: Path):
        result = runner.invoke(
            main, ["config", "set", "rl.nope", "1", "--path", str(initialized_project)]
        )
        assert result.exit_code == 1


class TestCLIVersion:
    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
