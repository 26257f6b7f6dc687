"""Command line interface for inspecting and managing bizflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from bizflow import LifecycleController, WorkflowEditor, get_repository
from bizflow.config import load_config
from bizflow.errors import InvalidTransitionError, NotFoundError, NotRunnableError
from bizflow.lifecycle import check_runnable
from bizflow.models import Workflow, WorkflowStatus
from bizflow.templates import list_templates

app = typer.Typer(help="CLI for bizflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
run_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")


@app.callback()
def main() -> None:
    """bizflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(workflow_id: str) -> Workflow:
    repo = get_repository()
    try:
        return asyncio.run(repo.load(workflow_id))
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    owner: Optional[str] = typer.Option(None, help="Only workflows owned by this user"),
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only workflows in this status"),
) -> None:
    """
    List workflows, newest first.

    Example:
        bizflow workflow list --status active
        # Output: 3f2c...    Lead Qualification    active    4 steps
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(owner_id=owner, status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status.value}\t{len(wf.graph.steps)} steps")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's status, policies, steps and connections."""
    wf = _load_or_exit(workflow_id)
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value}, v{wf.version})")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    typer.echo(
        f"Trigger policy: {wf.trigger_policy.mode.value}"
        + (f" ({wf.trigger_policy.schedule})" if wf.trigger_policy.schedule else "")
    )
    typer.echo(f"Error policy: {wf.error_policy.mode.value}")
    for step in wf.graph.steps:
        typer.echo(f"- {step.id} [{step.kind.value}] {step.title}")
    for conn in wf.graph.connections:
        label = "" if conn.branch is None else f" ({'true' if conn.branch else 'false'})"
        typer.echo(f"  {conn.source} -> {conn.target}{label}")


@workflow_app.command("import")
def workflow_import(
    path: Path,
    owner: Optional[str] = typer.Option(None, help="Owner to assign to the workflow"),
) -> None:
    """
    Import a workflow document from a JSON file.

    The workflow is stored as a draft; activate it once it validates.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.secho(f"Cannot read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        wf = Workflow.from_document(data)
    except ValueError as exc:
        typer.secho(f"Invalid workflow document: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    changes = {"status": WorkflowStatus.DRAFT}
    if owner is not None:
        changes["owner_id"] = owner
    wf = wf.model_copy(update=changes)
    asyncio.run(get_repository().save(wf))
    typer.echo(f"Imported workflow {wf.id}: {wf.name}")


@workflow_app.command("export")
def workflow_export(workflow_id: str) -> None:
    """Print a workflow document as JSON."""
    wf = _load_or_exit(workflow_id)
    typer.echo(json.dumps(wf.to_document(), indent=2))


@workflow_app.command("validate")
def workflow_validate(workflow_id: str) -> None:
    """Report whether a workflow could be activated."""
    wf = _load_or_exit(workflow_id)
    problems = check_runnable(wf)
    if not problems:
        typer.echo("Workflow is runnable")
        return
    for problem in problems:
        typer.secho(f"- {problem}", fg=typer.colors.YELLOW)
    raise typer.Exit(code=1)


def _transition(workflow_id: str, action: str) -> None:
    controller = LifecycleController(WorkflowEditor(get_repository()))
    operation = {
        "activate": controller.activate,
        "deactivate": controller.deactivate,
        "draft": controller.revert_to_draft,
    }[action]
    try:
        wf = asyncio.run(operation(workflow_id))
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except NotRunnableError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for problem in exc.problems:
            typer.echo(f"- {problem}")
        raise typer.Exit(code=1)
    except InvalidTransitionError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Activate a workflow so trigger events start runs."""
    _transition(workflow_id, "activate")


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Pause an active workflow."""
    _transition(workflow_id, "deactivate")


@workflow_app.command("draft")
def workflow_draft(workflow_id: str) -> None:
    """Move a workflow back to draft."""
    _transition(workflow_id, "draft")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete a workflow and its run history."""
    editor = WorkflowEditor(get_repository())
    try:
        asyncio.run(editor.delete_workflow(workflow_id))
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted workflow {workflow_id}")


@run_app.command("list")
def run_list(workflow_id: str) -> None:
    """
    Show the execution history of a workflow, newest first.

    Example:
        bizflow run list 3f2c...
        # Output: 9a1b...    completed    2.31s    2024-01-01T10:00:00+00:00
    """
    runs = asyncio.run(get_repository().list_runs(workflow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        duration = f"{run.duration:.2f}s" if run.duration is not None else "-"
        started = run.started_at.isoformat() if run.started_at else "-"
        typer.echo(f"{run.id}\t{run.status.value}\t{duration}\t{started}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show the step-by-step results of a run."""
    run = asyncio.run(get_repository().get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id} of workflow {run.workflow_id}: {run.status.value}")
    if run.trigger:
        typer.echo(f"Trigger: {run.trigger}")
    for result in run.step_results:
        line = f"- {result.step_id}: {result.status.value}"
        if result.error is not None:
            line += f" [{result.error.cause.value}] {result.error.message}"
        typer.echo(line)


@app.command("templates")
def templates() -> None:
    """List the stock step templates."""
    for template in list_templates():
        typer.echo(f"{template.key}\t{template.kind.value}\t{template.title} - {template.description}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
