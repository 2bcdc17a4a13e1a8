#!/usr/bin/env python3
"""
CI/CD Dispatch Main Entry Point

Command-line interface for evaluating repository events into dispatch
decisions, executing them, and publishing the results.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .aggregator import RunReport, build_report
from .audit import AuditLog
from .config.loader import DEFAULT_CONFIG_PATH, DispatchConfig, load_config
from .config.settings import DispatchSettings
from .contracts.models import decision_to_json, load_event
from .dispatcher import Dispatcher
from .domain.models import DispatchDecision
from .errors import DispatchError, ValidationError
from .executors.registry import ExecutorRegistry
from .reporting.github import GitHubReporter, preview_comment_body
from .runner.scheduler import PipelineRunner
from .utils.json_logger import configure_json_logging

app = typer.Typer(
    name="dispatch",
    help="Unified CI/CD dispatch and orchestration engine",
    rich_markup_mode="rich",
)
console = Console()

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_NO_MATCH = 2

STATUS_STYLES = {
    "Success": "green",
    "Succeeded": "green",
    "Degraded": "yellow",
    "Skipped": "yellow",
    "Failed": "red",
    "Cancelled": "magenta",
}


# Cross-platform safe success/failure symbols (avoid Unicode on legacy Windows)
def _symbol(ok: bool) -> str:
    enc = (getattr(sys.stdout, "encoding", None) or "").lower()
    if "utf" in enc:
        return "✓" if ok else "✗"
    return "OK" if ok else "FAIL"


def _setup_logging(settings: DispatchSettings) -> None:
    # Leave handlers alone when a host (e.g. a test harness) configured logging
    if not logging.getLogger().handlers:
        configure_json_logging(settings.log_level, settings.log_format)


def _fail(message: str, code: int = EXIT_INVALID) -> None:
    console.print(f"[red]{_symbol(False)} {message}[/red]")
    raise typer.Exit(code=code)


def _load(config_path: Path, repo_root: Optional[Path]) -> DispatchConfig:
    config = load_config(config_path, repo_root=repo_root)
    _setup_logging(config.settings)
    return config


def _print_decision(decision: DispatchDecision, verbose: bool = False) -> None:
    table = Table(title=f"Dispatch decision for event {decision.event_id}")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Priority")
    table.add_column("Job", style="bold")
    table.add_column("Component")
    table.add_column("Depends on", style="dim")
    table.add_column("Shares result of", style="dim")

    for selection in decision.selected_pipelines:
        for job in selection.jobs:
            table.add_row(
                selection.pipeline_id,
                selection.priority.value,
                job.id.split("/", 1)[-1],
                job.component_id,
                ", ".join(sorted(job.dependencies)),
                job.shares_result_of or "",
            )
    console.print(table)

    for warning in decision.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    if verbose:
        for line in decision.trail:
            console.print(f"[dim]- {line}[/dim]")


def _print_report(report: RunReport) -> None:
    style = STATUS_STYLES.get(report.status, "white")
    console.print(
        f"[bold]Run {report.run_id}[/bold] on {report.ref}: [{style}]{report.status}[/{style}]"
        + (" (superseded)" if report.superseded else "")
    )

    table = Table(title="Pipelines")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    for pipeline in report.pipelines:
        style = STATUS_STYLES.get(pipeline.status, "white")
        table.add_row(
            pipeline.id, pipeline.type, f"[{style}]{pipeline.status}[/{style}]", pipeline.reason
        )
    console.print(table)

    jobs = {job.id: job for pipeline in report.pipelines for job in pipeline.jobs}
    table = Table(title="Jobs by component")
    table.add_column("Component", style="cyan")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="dim")
    for component_id, job_ids in report.components.items():
        for job_id in job_ids:
            job = jobs[job_id]
            style = STATUS_STYLES.get(job.status, "white")
            table.add_row(
                component_id,
                job_id,
                f"[{style}]{job.status}[/{style}]",
                str(job.attempts),
                job.error or "",
            )
    console.print(table)


@app.command("evaluate")
def evaluate(
    event_file: Path = typer.Option(..., "--event-file", help="Event JSON document"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Evaluate without recording to the audit log"
    ),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Dispatch config"),
    output: Optional[Path] = typer.Option(
        None, "--output", help="Write the decision JSON to this file"
    ),
    repo_root: Optional[Path] = typer.Option(
        None, "--repo-root", help="Repository root for stack detection"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show the reasoning trail"),
    json_output: bool = typer.Option(
        False, "--json", help="Print the decision JSON instead of tables"
    ),
):
    """Evaluate an event into a dispatch decision."""
    try:
        config = _load(config_path, repo_root)
        event = load_event(event_file)
        audit = None if dry_run else AuditLog(Path(config.settings.audit_log))
        decision = Dispatcher(config, audit).run(event)
    except DispatchError as e:
        _fail(str(e))

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(decision_to_json(decision), encoding="utf-8")

    if json_output:
        typer.echo(decision_to_json(decision))
        raise typer.Exit(code=EXIT_NO_MATCH if decision.is_empty else EXIT_OK)

    if dry_run:
        console.print("[yellow]DRY RUN - decision not recorded[/yellow]")
    _print_decision(decision, verbose)
    if output:
        console.print(f"[dim]Decision written to {output}[/dim]")

    if decision.is_empty:
        console.print(f"[yellow]No pipeline matched event {decision.event_id}[/yellow]")
        raise typer.Exit(code=EXIT_NO_MATCH)
    console.print(
        f"[green]{_symbol(True)} {len(decision.selected_pipelines)} pipeline(s), "
        f"{len(decision.all_jobs())} job(s) dispatched[/green]"
    )


@app.command("run")
def run(
    event_file: Path = typer.Option(..., "--event-file", help="Event JSON document"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Dispatch config"),
    simulate: bool = typer.Option(
        False, "--simulate", help="Simulate executors; nothing is run or recorded"
    ),
    report_path: Optional[Path] = typer.Option(
        None, "--report", help="Write the run report JSON to this file"
    ),
    repo_root: Optional[Path] = typer.Option(
        None, "--repo-root", help="Repository root for stack detection"
    ),
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Explicit run id"),
):
    """Dispatch an event and execute the selected pipelines."""
    try:
        config = _load(config_path, repo_root)
        event = load_event(event_file)
        audit = None if simulate else AuditLog(Path(config.settings.audit_log))
        decision = Dispatcher(config, audit).run(event)
    except DispatchError as e:
        _fail(str(e))

    if decision.is_empty:
        console.print(f"[yellow]No pipeline matched event {decision.event_id}[/yellow]")
        raise typer.Exit(code=EXIT_NO_MATCH)

    if simulate:
        console.print("[yellow]SIMULATION - executors are not invoked[/yellow]")
        executors = ExecutorRegistry.simulated()
    else:
        executors = ExecutorRegistry.from_config(config)

    runner = PipelineRunner(config.settings, executors, config=config)
    outcome = asyncio.run(runner.execute(decision, event.ref, run_id=run_id))
    report = build_report(decision, outcome)

    if audit is not None:
        try:
            audit.record(
                action="run",
                resource="run",
                resource_id=report.run_id,
                actor=event.actor,
                success=report.status in ("Success", "Degraded"),
                details={"event_id": event.id, "status": report.status},
            )
        except DispatchError as e:
            _fail(str(e))

    _print_report(report)
    if report_path:
        report.write(report_path)
        console.print(f"[dim]Report written to {report_path}[/dim]")


@app.command("validate-config")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Dispatch config"),
    repo_root: Optional[Path] = typer.Option(
        None, "--repo-root", help="Repository root for stack detection"
    ),
):
    """Validate the dispatch config and show resolved component stacks."""
    try:
        config = _load(config_path, repo_root)
    except ValidationError as e:
        console.print(f"[red]{_symbol(False)} {e.args[0]}[/red]")
        for problem in e.problems:
            console.print(f"[red]- {problem}[/red]")
        raise typer.Exit(code=EXIT_INVALID)

    table = Table(title="Components")
    table.add_column("Component", style="cyan")
    table.add_column("Paths")
    table.add_column("Stacks")
    for component in config.components:
        stacks = config.stacks.get(component.id)
        if stacks:
            described = ", ".join(f"{s.language}/{s.package_manager or '-'}" for s in stacks)
        else:
            described = "[yellow]Unknown[/yellow]"
        table.add_row(component.id, ", ".join(component.path_patterns), described)
    console.print(table)
    console.print(
        f"[green]{_symbol(True)} {len(config.components)} components, "
        f"{len(config.pipelines)} pipelines[/green]"
    )


@app.command("report")
def show_report(
    report_file: Path = typer.Argument(..., help="Run report JSON written by 'run --report'"),
):
    """Render a stored run report."""
    try:
        report = RunReport.load(report_file)
    except ValidationError as e:
        _fail(str(e))
    _print_report(report)


@app.command("publish-status")
def publish_status(
    report_file: Path = typer.Argument(..., help="Run report JSON"),
    repo: str = typer.Option(..., "--repo", help="GitHub repository (owner/name)"),
    sha: str = typer.Option(..., "--sha", help="Commit SHA to attach statuses to"),
    target_url: Optional[str] = typer.Option(None, "--target-url", help="Link for statuses"),
):
    """Post one GitHub commit status per pipeline of a run report."""
    try:
        report = RunReport.load(report_file)
        posted = GitHubReporter(repo).publish_statuses(report, sha, target_url)
    except DispatchError as e:
        _fail(str(e))
    console.print(f"[green]{_symbol(True)} Published {len(posted)} commit status(es)[/green]")


@app.command("preview-comment")
def preview_comment(
    repo: str = typer.Option(..., "--repo", help="GitHub repository (owner/name)"),
    pr_number: int = typer.Option(..., "--pr", help="Pull request number"),
    failed: bool = typer.Option(False, "--failed", help="Report a failed preview build"),
    deployment_url: Optional[str] = typer.Option(None, "--deployment-url"),
    project_name: str = typer.Option("Project", "--project-name"),
    project_url: Optional[str] = typer.Option(None, "--project-url"),
    deployment_id: Optional[str] = typer.Option(None, "--deployment-id"),
    run_url: Optional[str] = typer.Option(None, "--run-url", help="Link to workflow logs"),
):
    """Replace the sticky preview-deployment comment on a pull request."""
    body = preview_comment_body(
        pr_number,
        success=not failed,
        project_name=project_name,
        deployment_url=deployment_url,
        project_url=project_url,
        deployment_id=deployment_id,
        run_url=run_url,
    )
    try:
        GitHubReporter(repo).post_preview_comment(pr_number, body)
    except DispatchError as e:
        _fail(str(e))
    console.print(f"[green]{_symbol(True)} Preview comment posted on PR #{pr_number}[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
