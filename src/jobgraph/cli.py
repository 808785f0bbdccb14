# cli.py
from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from jobgraph.context import TriggerContext
from jobgraph.engine import Engine, plan
from jobgraph.errors import ConfigurationError
from jobgraph.git_facts.git import local_facts
from jobgraph.loader import load_workflow
from jobgraph.settings import Settings
from jobgraph.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    default_workflow = current_dir / "jobgraph_workflow.py"

    workflow_files = [default_workflow] if default_workflow.exists() else []
    for pattern in ("*_workflow.py", "*_workflow.json"):
        for path in current_dir.glob(pattern):
            if path != default_workflow:
                workflow_files.append(path)
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobgraph run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  jobgraph_workflow.py", "  *_workflow.py", "  *_workflow.json"],
            suggestion="Create a workflow file:\n  jobgraph_workflow.py\n\nOr specify a workflow explicitly:\n  jobgraph run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  jobgraph run --workflow jobgraph_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _parse_inputs(pairs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--input")
        key, value = pair.split("=", 1)
        inputs[key.strip()] = value
    return inputs


def _load(workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(1)


def _print_configuration_error(e: ConfigurationError) -> None:
    get_console().print_error(
        "Invalid workflow",
        e.message,
        details=[f"{k}={v}" for k, v in ({"kind": e.kind, "job": e.job} | e.details).items() if v is not None],
        suggestion="Fix the workflow definition; no job was started.",
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """jobgraph: workflow execution engine for CI job graphs."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to jobgraph_workflow.py if present)")
@click.option("--event", "event_name", default="workflow_dispatch", show_default=True, help="Triggering event name")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to the current user)")
@click.option("--repository", default=None, help="owner/repo (defaults to the origin remote)")
@click.option("--event-payload", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON file exposed as github.event")
@click.option("--input", "inputs", multiple=True, help="Workflow input as key=value (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--artifact-dir", default=None, help="Artifact directory (defaults to JOBGRAPH_ARTIFACT_DIR)")
@click.pass_context
def run(ctx, workflow, event_name, ref, sha, actor, repository, event_payload, inputs, workers, artifact_dir):
    """Run a workflow."""
    console = get_console()
    workflow_path, definition = _load(workflow)

    facts = local_facts()
    payload = json.loads(Path(event_payload).read_text(encoding="utf-8")) if event_payload else {}
    trigger = TriggerContext(
        event_name=event_name,
        ref=ref or facts.get("ref", "refs/heads/main"),
        sha=sha or facts.get("sha", ""),
        actor=actor or os.environ.get("USER") or os.environ.get("USERNAME", ""),
        repository=repository or facts.get("repository", Path(".").resolve().name),
        event=payload,
        inputs=_parse_inputs(inputs),
    )

    settings = Settings.from_env().override(max_workers=workers, artifact_dir=artifact_dir)
    engine = Engine(settings=settings)

    try:
        started = engine.start_run(definition, trigger)
    except ConfigurationError as e:
        _print_configuration_error(e)
        sys.exit(1)

    console.print_debug(f"Loaded {len(definition.jobs)} job(s) from {workflow_path}")
    try:
        report = None
        while report is None:
            report = started.wait(0.5)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run...")
        started.cancel()
        started.wait(settings.cancel_grace_seconds * 2)
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    sys.exit(report.exit_code)


@cli.command("plan")
@click.option("--workflow", default=None, help="Workflow file path (defaults to jobgraph_workflow.py if present)")
def plan_cmd(workflow):
    """Expand a workflow and print its topological levels without running it."""
    console = get_console()
    _path, definition = _load(workflow)
    try:
        levels, deferred = plan(definition)
    except ConfigurationError as e:
        _print_configuration_error(e)
        sys.exit(1)

    console.print_header(f"PLAN: {definition.name}")
    for index, level in enumerate(levels):
        console.print_plan_level(index, level)
    for template in deferred:
        console.print_plan_deferred(template)


if __name__ == "__main__":
    cli()
