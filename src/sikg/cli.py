"""Command-line interface for SIKG."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import TypeAdapter, ValidationError
from rich.logging import RichHandler

from sikg import __version__
from sikg.config import (
    ProjectConfig,
    find_project_root,
    load_config,
    save_config,
    set_config_value,
)
from sikg.exceptions import ConfigError, SIKGError
from sikg.graph.models import SemanticChangeInfo, TestResult
from sikg.ui.console import Console

console = Console()


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("sikg")
    if any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
        return
    handler = RichHandler(console=console.console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _get_project_root(path: str | None = None) -> Path:
    """Find the project root or error."""
    if path:
        root = Path(path).resolve()
        if not root.exists():
            console.error(f"Path does not exist: {path}")
            sys.exit(1)
        return root

    root = find_project_root()
    if root is None:
        console.error(
            "No SIKG project found. Run 'sikg init' first, "
            "or specify a path with --path."
        )
        sys.exit(1)
    return root


def _load_project_config(root: Path) -> ProjectConfig:
    try:
        return load_config(root)
    except ConfigError as e:
        console.error(str(e))
        sys.exit(1)


def _load_manager(root: Path):
    """Load the graph and learning state for a project."""
    from sikg.manager import SIKGManager

    manager = SIKGManager(root, _load_project_config(root))
    if not manager.graph_path.exists():
        console.error("No graph found. Run 'sikg init' first.")
        sys.exit(1)
    try:
        manager.initialize()
    except SIKGError as e:
        console.error(str(e))
        sys.exit(1)
    return manager


def _read_json_list(path: str, item_type: type, what: str) -> list:
    try:
        data = json.loads(Path(path).read_text())
        return TypeAdapter(list[item_type]).validate_python(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        console.error(f"Invalid {what} file {path}: {e}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="sikg")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def main(verbose: bool):
    """SIKG - adaptive change-impact graph for regression test selection."""
    _setup_logging(verbose)


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--code", "code_file", required=True, type=click.Path(exists=True),
              help="JSON list of parsed code elements.")
@click.option("--tests", "tests_file", required=True, type=click.Path(exists=True),
              help="JSON list of parsed test cases.")
def init(path: str | None, code_file: str, tests_file: str):
    """Build the impact graph from parser records and save it."""
    from sikg.graph.builder import CodeElementRecord, GraphBuilder, TestCaseRecord
    from sikg.manager import SIKGManager

    root = Path(path or ".").resolve()
    if not root.exists():
        console.error(f"Path does not exist: {root}")
        sys.exit(1)

    console.banner()
    console.info(f"Initializing SIKG for: {root}")

    config = _load_project_config(root)
    config.name = root.name
    config.root_path = str(root)
    save_config(root, config)
    console.success("Configuration saved")

    code = _read_json_list(code_file, CodeElementRecord, "code record")
    tests = _read_json_list(tests_file, TestCaseRecord, "test record")

    manager = SIKGManager(root, config)
    manager.initialize(code, tests, rebuild=True)
    manager.save()

    builder = GraphBuilder(config.graph)
    builder.store = manager.store
    console.show_stats(builder.get_stats())
    console.success("Impact graph saved to .sikg/")


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
def status(path: str | None):
    """Show graph statistics and the pending cycle, if any."""
    from sikg.graph.builder import GraphBuilder

    root = _get_project_root(path)
    manager = _load_manager(root)

    console.info(f"Project: {root.name}")
    builder = GraphBuilder(manager.config.graph)
    builder.store = manager.store
    console.show_stats(builder.get_stats())
    if manager.active_session:
        console.warning(f"Pending cycle: {manager.active_session} (awaiting 'sikg feedback')")
    else:
        console.info("No pending cycle")


@main.command()
@click.argument("changes_file", type=click.Path(exists=True))
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--time-budget", default=None, type=float,
              help="Time available for the test run, in milliseconds.")
@click.option("--limit", "-n", default=None, type=int, help="Select at most N tests.")
@click.option("--json", "as_json", is_flag=True, help="Print the selection as JSON.")
def select(changes_file: str, path: str | None, time_budget: float | None,
           limit: int | None, as_json: bool):
    """Score tests against a change set and select the ones to run."""
    from sikg.exceptions import CycleInProgressError

    root = _get_project_root(path)
    manager = _load_manager(root)
    changes = _read_json_list(changes_file, SemanticChangeInfo, "change")

    try:
        result = manager.analyze_changes(changes, time_constraints=time_budget, limit=limit)
    except CycleInProgressError as e:
        console.error(str(e))
        sys.exit(1)
    manager.save()

    if as_json:
        click.echo(json.dumps({
            "session_id": result.session_id,
            "selection_threshold": result.selection_threshold,
            "selected_tests": result.selected_tests,
            "impacts": {tid: i.model_dump(mode="json") for tid, i in result.impacts.items()},
        }, indent=2))
        return

    if result.change_set.skipped:
        console.warning(f"Skipped {len(result.change_set.skipped)} changes naming unknown nodes")
    if not result.impacts:
        console.warning("No tests are impacted by these changes")
        return
    console.show_impacts(result.ranked, set(result.selected_tests), result.selection_threshold)
    console.success(
        f"Selected {len(result.selected_tests)} of {len(result.impacts)} impacted tests"
    )
    if result.session_id:
        console.info(f"Session {result.session_id} is waiting for 'sikg feedback'")


@main.command()
@click.argument("results_file", type=click.Path(exists=True))
@click.option("--path", "-p", default=None, help="Path to the project root.")
def feedback(results_file: str, path: str | None):
    """Ingest test outcomes for the pending cycle and learn from them."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    results = _read_json_list(results_file, TestResult, "result")

    had_cycle = manager.active_session is not None
    outcome = manager.ingest_results(results)
    manager.save()

    if outcome is None:
        if had_cycle:
            console.warning("Pending cycle expired or learning is disabled; outcomes recorded only")
        else:
            console.warning("No pending cycle; outcomes recorded only")
        return

    console.show_feedback(
        outcome.feedback.performance_metrics.model_dump(),
        outcome.reward.total_reward,
        len(outcome.feedback.learning_signals),
        len(outcome.weight_report.updates) if outcome.weight_report else 0,
    )
    console.success("Feedback processed")


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
def abort(path: str | None):
    """Drop the pending cycle without learning from it."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    if manager.abort_cycle():
        manager.save()
        console.success("Pending cycle aborted")
    else:
        console.info("No pending cycle")


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
def policy(path: str | None):
    """Show policy parameters, stability and recommendations."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    console.show_policy(manager.get_rl_status())


@main.command("export-state")
@click.argument("output", type=click.Path())
@click.option("--path", "-p", default=None, help="Path to the project root.")
def export_state(output: str, path: str | None):
    """Write the policy/RL state to a file."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    manager.export_state(Path(output))
    console.success(f"RL state exported to {output}")


@main.command("import-state")
@click.argument("source", type=click.Path(exists=True))
@click.option("--path", "-p", default=None, help="Path to the project root.")
def import_state(source: str, path: str | None):
    """Load policy/RL state from a file (malformed state resets to defaults)."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    ok = manager.import_state(Path(source))
    manager.save()
    if ok:
        console.success(f"RL state imported from {source}")
    else:
        console.warning("State could not be used; policy reset to defaults")


@main.command("export-graph")
@click.argument("output", type=click.Path())
@click.option("--path", "-p", default=None, help="Path to the project root.")
def export_graph(output: str, path: str | None):
    """Export nodes and links for visualization."""
    root = _get_project_root(path)
    manager = _load_manager(root)
    Path(output).write_text(json.dumps(manager.export_graph_for_visualization(), indent=2))
    console.success(f"Graph exported to {output}")


# =========================================================================
# Config Management
# =========================================================================

@main.command("config")
@click.argument("action", type=click.Choice(["set", "get", "show"]))
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--path", "-p", default=None, help="Path to the project root.")
def config_cmd(action: str, key: str | None, value: str | None, path: str | None):
    """Manage SIKG configuration."""
    root = _get_project_root(path)
    config = _load_project_config(root)

    if action == "show":
        console.console.print_json(json.dumps(config.model_dump(), indent=2))
    elif action == "get":
        if not key:
            console.error("Usage: sikg config get <key>")
            sys.exit(1)
        data = config.model_dump()
        for part in key.split("."):
            if isinstance(data, dict) and part in data:
                data = data[part]
            else:
                console.error(f"Unknown key: {key}")
                sys.exit(1)
        console.console.print(f"{key} = {data}")
    elif action == "set":
        if not key or value is None:
            console.error("Usage: sikg config set <key> <value>")
            sys.exit(1)
        try:
            # Try to parse as JSON for non-string values
            try:
                parsed_value = json.loads(value)
            except json.JSONDecodeError:
                parsed_value = value

            config = set_config_value(config, key, parsed_value)
            save_config(root, config)
            console.success(f"Set {key} = {parsed_value}")
        except KeyError:
            console.error(f"Unknown config key: {key}")
            sys.exit(1)
        except ConfigError as e:
            console.error(str(e))
            sys.exit(1)


if __name__ == "__main__":
    main()
