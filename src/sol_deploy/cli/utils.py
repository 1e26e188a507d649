"""
CLI utility helpers — workspace construction and output formatting.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NoReturn

try:
    import typer
    from rich.console import Console
    from rich.table import Table
except ImportError as e:  # pragma: no cover
    raise SystemExit("Missing CLI deps.  Install with:  pip install sol-deploy") from e

from sol_deploy.core.errors import ExitCode, SolDeployError
from sol_deploy.core.settings import DeploySettings, get_settings
from sol_deploy.deploy.interaction import AssumeYesOperator, ConsoleOperator, Operator
from sol_deploy.deploy.results import PipelineRun, ProbeResult, RunOutcome, ServiceState
from sol_deploy.deploy.workspace import Workspace

console = Console()
err_console = Console(stderr=True)


# ── Workspace helper ─────────────────────────────────────────────────────


def _state(ctx: typer.Context | None) -> dict[str, Any]:
    if ctx is None:
        return {}
    root = ctx.find_root()
    if root.obj is None:
        root.obj = {}
    return root.obj


def get_cli_settings(ctx: typer.Context | None) -> DeploySettings:
    state = _state(ctx)
    settings = state.get("settings")
    if settings is None:
        settings = get_settings(project_root=state.get("root"))
        state["settings"] = settings
    return settings


def make_workspace(ctx: typer.Context | None, *, assume_yes: bool = False) -> Workspace:
    """Build the Workspace for a command.

    Tests inject a runner, operator or httpx transport through
    ``CliRunner.invoke(app, args, obj={...})``.
    """
    state = _state(ctx)
    operator: Operator | None = state.get("operator")
    if operator is None:
        operator = AssumeYesOperator() if assume_yes else ConsoleOperator(err_console)
    return Workspace.from_settings(
        get_cli_settings(ctx),
        operator=operator,
        runner=state.get("runner"),
        transport=state.get("transport"),
    )


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    """Print JSON to stdout without Rich markup interpretation."""
    typer.echo(json.dumps(payload, indent=2, default=str))


def exit_with(code: int | ExitCode) -> NoReturn:
    raise typer.Exit(code=int(code))


def fail(exc: SolDeployError) -> NoReturn:
    """Print a SolDeployError with its problems and remediation, then exit."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.kind.value}): {exc.message}")
    for problem in exc.problems:
        err_console.print(f"  [red]•[/red] {problem}")
    if exc.stderr:
        err_console.print(f"[dim]{exc.stderr.strip()[-2000:]}[/dim]")
    if exc.remediation:
        err_console.print(f"[yellow]Fix:[/yellow] {exc.remediation}")
    exit_with(exc.exit_code)


_OUTCOME_STYLE = {
    RunOutcome.SUCCESS: "green",
    RunOutcome.PARTIAL_FAILURE: "yellow",
    RunOutcome.FATAL_FAILURE: "red bold",
    RunOutcome.CANCELLED: "magenta",
}


def print_run(run: PipelineRun) -> None:
    """Pretty-print a PipelineRun and the details of each failed step."""
    table = Table(title=f"{run.pipeline} — run {run.run_id}")
    table.add_column("Step", style="bold")
    table.add_column("Result")
    table.add_column("Time", justify="right")
    table.add_column("Message", overflow="fold")

    for r in run.step_results:
        if r.success:
            status = "[green]✓ ok[/green]"
        elif r.fatal:
            status = f"[red]✗ {r.error_kind.value if r.error_kind else 'FAILED'}[/red]"
        else:
            status = f"[yellow]! {r.error_kind.value if r.error_kind else 'FAILED'}[/yellow]"
        table.add_row(r.step_name, status, f"{r.duration_ms:.0f}ms", r.message or "—")

    console.print(table)

    for r in run.failed_steps:
        label = "[red]fatal[/red]" if r.fatal else "[yellow]non-fatal[/yellow]"
        err_console.print(f"\n[bold]{r.step_name}[/bold] ({label}): {r.message}")
        for problem in r.errors:
            err_console.print(f"  [red]•[/red] {problem}")
        if r.stderr:
            err_console.print(f"[dim]{r.stderr.strip()[-2000:]}[/dim]")
        if r.remediation:
            err_console.print(f"[yellow]Fix:[/yellow] {r.remediation}")

    style = _OUTCOME_STYLE.get(run.outcome, "white")
    console.print(f"\n[{style}]{run.outcome.value}[/{style}] — {run.summary} in {run.duration_ms / 1000:.1f}s")


def finish_run(run: PipelineRun, *, as_json: bool = False, report_dir: Path | None = None) -> None:
    """Report a finished run and exit with its exit code when not successful."""
    if report_dir is not None:
        from sol_deploy.deploy.reporting import RunReporter

        path = RunReporter(report_dir).write(run)
        if not as_json:
            console.print(f"[dim]Report: {path}[/dim]")

    if as_json:
        typer.echo(run.model_dump_json(indent=2))
    else:
        print_run(run)

    if run.outcome != RunOutcome.SUCCESS:
        exit_with(run.exit_code)


def print_services(services: list[ServiceState]) -> None:
    """Pretty-print ``docker compose ps`` rows."""
    table = Table(title="Service Status")
    table.add_column("Service", style="bold")
    table.add_column("State")
    table.add_column("Health")
    table.add_column("Ports")
    table.add_column("Image")

    for svc in services:
        style = {
            "running": "green",
            "restarting": "yellow",
            "created": "yellow",
            "paused": "dim",
            "unhealthy": "red",
            "exited": "red",
            "dead": "red bold",
        }.get(svc.state, "white")
        table.add_row(
            svc.name,
            f"[{style}]{svc.state}[/{style}]",
            svc.health or "—",
            ", ".join(svc.ports) or "—",
            svc.image or "—",
        )
    console.print(table)


def print_probes(results: list[ProbeResult]) -> None:
    table = Table(title="Health Probes")
    table.add_column("Target", style="bold")
    table.add_column("Status")
    table.add_column("HTTP", justify="right")
    table.add_column("Latency", justify="right")
    table.add_column("URL", overflow="fold")

    for r in results:
        style = "green" if r.is_up else "red"
        table.add_row(
            r.name,
            f"[{style}]{r.status.value}[/{style}]",
            str(r.http_status) if r.http_status is not None else "—",
            f"{r.latency_ms:.0f}ms" if r.latency_ms is not None else "—",
            r.url if r.error is None else f"{r.url} ({r.error})",
        )
    console.print(table)
