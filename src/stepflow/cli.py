# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from stepflow.artifacts import LocalArtifactStore
from stepflow.backends import EnvSecretStore, LocalRunner
from stepflow.config import EngineConfig
from stepflow.errors import RunError
from stepflow.git import GitError, local_event
from stepflow.model import Event
from stepflow.runner import RunCoordinator, RunStatus, load_workflow
from stepflow.scheduler import ParallelScope
from stepflow.triggers import matches
from stepflow.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "stepflow_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
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
                suggestion="Create a workflow file or specify a different path:\n  stepflow run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  stepflow run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  stepflow run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _report_invalid(e: RunError) -> None:
    cause = e.cause
    details = [str(cause)] if cause is not None else None
    get_console().print_error("Workflow validation failed", e.message, details=details)


def _event(event: str | None, ref: str | None, git_event: bool, compare_ref: str) -> Event | None:
    if git_event:
        try:
            return local_event(event or "push", ref=ref, compare_ref=compare_ref)
        except GitError as e:
            get_console().print_error(
                "Could not read git state",
                str(e),
                suggestion="Run inside a git checkout or pass --no-git-event.",
            )
            sys.exit(1)
    if event or ref:
        return Event(name=event or "manual", ref=ref)
    return None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and scheduler transitions)",
)
@click.pass_context
def cli(ctx, debug):
    """stepflow: CI workflow engine (jobs, matrices, conditions, outputs)."""
    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        get_console().print_error(
            "Invalid configuration",
            str(e),
            suggestion="Fix or unset the STEPFLOW_* environment variable.",
        )
        sys.exit(1)
    if debug:
        config = config.override(debug=True)
    set_console(Console(debug=config.debug))
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option(
    "--parallel-scope",
    default=None,
    type=click.Choice([s.value for s in ParallelScope]),
    help="What max_parallel counts: the job's matrix group or the whole run",
)
@click.option("--event", default=None, help="Trigger event name (enables trigger filtering)")
@click.option("--ref", default=None, help="Git ref for the event, e.g. refs/heads/main")
@click.option("--git-event/--no-git-event", default=False, help="Describe the event from the local git checkout")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--artifacts-dir", default=None, help="Artifact store directory")
@click.option("--secret-prefix", default="STEPFLOW_SECRET_", show_default=True, help="Env prefix secrets are read from")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run result as JSON")
@click.pass_context
def run(ctx, workflow, workers, parallel_scope, event, ref, git_event, compare_ref, artifacts_dir, secret_prefix, as_json):
    """Run a stepflow workflow."""
    config: EngineConfig = ctx.obj["config"].override(
        max_workers=workers,
        parallel_scope=parallel_scope,
        artifact_root=artifacts_dir,
    )
    if as_json:
        set_console(Console(debug=config.debug, quiet=True))
    console = get_console()

    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        coordinator = RunCoordinator(
            wf,
            runner=LocalRunner("."),
            secrets=EnvSecretStore(secret_prefix),
            artifacts=LocalArtifactStore(config.artifact_root),
            config=config,
            event=_event(event, ref, git_event, compare_ref),
        )
        result = coordinator.run()
    except RunError as e:
        _report_invalid(e)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    else:
        console.print_results(result)

    if result.status in (RunStatus.FAILED, RunStatus.CANCELLED):
        sys.exit(1)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--event", default=None, help="Show whether this event would trigger the workflow")
@click.option("--ref", default=None, help="Git ref for the event")
@click.pass_context
def plan(ctx, workflow, event, ref):
    """Print the execution plan (stages and matrix instances) without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        stages = RunCoordinator(wf, config=ctx.obj["config"]).plan()
    except RunError as e:
        _report_invalid(e)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_header(f"Plan: {wf.name}")
    if event or ref:
        ok, reason = matches(wf, Event(name=event or "manual", ref=ref))
        console.print_info(f"Trigger: {'runs' if ok else 'skipped'} ({reason})")
    for index, stage in enumerate(stages):
        console.print_plan_level(index, list(dict.fromkeys(i.job.name for i in stage)))
        for inst in stage:
            needs = ", ".join(inst.job.needs)
            console.print_plan_job(inst.name, f"needs: {needs}" if needs else "no dependencies")


if __name__ == "__main__":
    cli()
