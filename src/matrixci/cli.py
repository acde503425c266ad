# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from matrixci.config import EngineConfig
from matrixci.engine import load_workflow, plan, run_workflow, validate
from matrixci.errors import WorkflowError
from matrixci.logging import set_default_level
from matrixci.model import EventKind
from matrixci.providers import EnvEventSource, LocalRunnerProvider, ShellStepExecutor, StaticEventSource
from matrixci.results import JsonResultSink
from matrixci.ui.console import Console, get_console, set_console

EXIT_RUN_FAILED = 1
EXIT_INVALID_WORKFLOW = 2
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """Find matrixci_workflow.py and other *_workflow.py files in the current directory."""
    current_dir = Path(".")
    workflow_files = []

    default_workflow = current_dir / "matrixci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
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
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_INVALID_WORKFLOW)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  matrixci_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  matrixci_workflow.py\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_INVALID_WORKFLOW)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci_workflow.py",
        )
        sys.exit(EXIT_INVALID_WORKFLOW)

    return workflow_files[0]


def _load_or_exit(workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        graph = validate(wf)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e), details=[f"file: {workflow_path}"])
        sys.exit(EXIT_INVALID_WORKFLOW)
    except (TypeError, ValueError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_INVALID_WORKFLOW)
    return wf, graph


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, skipped steps and scheduler logs)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: matrix-aware, dependency-gated CI workflow engine."""
    set_console(Console(debug=debug))
    set_default_level(logging.DEBUG if debug else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@click.option(
    "--event",
    type=click.Choice([e.value for e in EventKind]),
    default=None,
    help="Triggering event (defaults to $MATRIXCI_EVENT, else manual)",
)
@click.option("--workers", default=None, type=int, help="Number of worker threads")
@click.option(
    "--runner-label",
    "runner_labels",
    multiple=True,
    default=("local",),
    show_default=True,
    help="Capability tag served by this machine (repeatable)",
)
@click.option("--capacity", default=None, type=int, help="Concurrent runners per label")
@click.option("--step-timeout", default=None, type=float, help="Default step timeout in seconds")
@click.option("--audit", "audit_path", default=None, type=click.Path(dir_okay=False), help="Write the run record as JSON")
@click.option("--quiet", is_flag=True, default=False, help="Only print the results summary")
@click.pass_context
def run(ctx, workflow, event, workers, runner_labels, capacity, step_timeout, audit_path, quiet):
    """Run a workflow."""
    if quiet:
        set_console(Console(debug=ctx.obj.get("debug", False), quiet=True))
    console = get_console()

    wf, _graph = _load_or_exit(workflow)

    try:
        config = EngineConfig.from_env().override(
            max_workers=workers,
            runner_capacity=capacity,
            default_step_timeout=step_timeout,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID_WORKFLOW)

    try:
        result = run_workflow(
            wf,
            provider=LocalRunnerProvider(runner_labels, capacity=config.runner_capacity),
            executor=ShellStepExecutor("."),
            event_source=StaticEventSource(event) if event else EnvEventSource(),
            config=config,
            sink=JsonResultSink(audit_path) if audit_path else None,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_RUN_FAILED)

    console.print_results(result)
    sys.exit(result.exit_code)


@cli.command("plan")
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
def plan_cmd(workflow):
    """Show expanded job instances, stage by stage."""
    wf, _graph = _load_or_exit(workflow)
    get_console().print_plan(plan(wf))


@cli.command("validate")
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
def validate_cmd(workflow):
    """Check a workflow without running it."""
    wf, graph = _load_or_exit(workflow)
    get_console().print_info(
        f"OK: {wf.name} ({len(graph.templates)} jobs, {len(graph.all_instances())} instances)"
    )


if __name__ == "__main__":
    cli()
