"""
CLI: ``sol-deploy services`` — service groups, logs and resource usage.

Groups come from ``SOL_DEPLOY_SERVICE_GROUPS`` (defaults: media, vpn,
monitoring, infrastructure); ``all`` acts on the whole compose project.
"""

from __future__ import annotations

import typer
from rich.table import Table

from sol_deploy.cli.utils import console, err_console, exit_with, fail, get_cli_settings, make_workspace, print_json
from sol_deploy.core.errors import ExitCode, SolDeployError

app = typer.Typer(no_args_is_help=True)


def _group_services(ctx: typer.Context, group: str) -> list[str]:
    """Services of *group*; ``all`` maps to no names, i.e. the whole project."""
    settings = get_cli_settings(ctx)
    if group == "all":
        return []
    try:
        return settings.expand_group(group)
    except KeyError:
        err_console.print(f"[red]Unknown service group:[/red] {group}")
        err_console.print(f"Available groups: {', '.join([*settings.service_groups, 'all'])}")
        exit_with(ExitCode.CONFIG_ERROR)


@app.command("list")
def list_services(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show each group's services and whether they are running."""
    settings = get_cli_settings(ctx)
    try:
        states = {s.name: s for s in make_workspace(ctx, assume_yes=True).compose().ps(include_stopped=True)}
    except SolDeployError as exc:
        fail(exc)

    if json_out:
        print_json(
            {
                group: {name: (states[name].state if name in states else "absent") for name in members}
                for group, members in settings.service_groups.items()
            }
        )
        return

    table = Table(title="Service Groups")
    table.add_column("Group", style="bold")
    table.add_column("Service")
    table.add_column("State")
    for group, members in settings.service_groups.items():
        for i, name in enumerate(members):
            state = states[name].state if name in states else "absent"
            style = "green" if state == "running" else "dim" if state == "absent" else "red"
            table.add_row(group if i == 0 else "", name, f"[{style}]{state}[/{style}]")
    console.print(table)


def _lifecycle(ctx: typer.Context, action: str, group: str) -> None:
    services = _group_services(ctx, group)
    compose = make_workspace(ctx, assume_yes=True).compose()
    console.print(f"[bold]{action.capitalize()}[/bold] {group} services…")
    try:
        getattr(compose, action)(services)
    except SolDeployError as exc:
        fail(exc)
    console.print(f"[green]✓[/green] {group}: {action} done")


@app.command("start")
def start_group(ctx: typer.Context, group: str = typer.Argument(..., help="Group name or 'all'.")) -> None:
    """Start a service group (docker compose up -d)."""
    _lifecycle(ctx, "up", group)


@app.command("stop")
def stop_group(ctx: typer.Context, group: str = typer.Argument(..., help="Group name or 'all'.")) -> None:
    """Stop a service group."""
    _lifecycle(ctx, "stop", group)


@app.command("restart")
def restart_group(ctx: typer.Context, group: str = typer.Argument(..., help="Group name or 'all'.")) -> None:
    """Restart a service group."""
    _lifecycle(ctx, "restart", group)


@app.command("update")
def update_group(ctx: typer.Context, group: str = typer.Argument(..., help="Group name or 'all'.")) -> None:
    """Pull newer images for a group and recreate its containers."""
    _lifecycle(ctx, "update", group)


@app.command("logs")
def service_logs(
    ctx: typer.Context,
    service: str = typer.Argument(..., help="Compose service name."),
    tail: int = typer.Option(50, "--tail", "-n", help="Number of lines."),
) -> None:
    """Print the last lines of a service's log."""
    compose = make_workspace(ctx, assume_yes=True).compose()
    try:
        output = compose.logs(service, tail=tail)
    except SolDeployError as exc:
        fail(exc)
    typer.echo(output.rstrip("\n"))


@app.command("resources")
def resources(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """CPU, memory and network usage per container (docker stats)."""
    compose = make_workspace(ctx, assume_yes=True).compose()
    try:
        rows = compose.stats()
    except SolDeployError as exc:
        fail(exc)

    if json_out:
        print_json(rows)
        return

    table = Table(title="Resource Usage")
    table.add_column("Container", style="bold")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Mem %", justify="right")
    table.add_column("Net I/O", justify="right")
    for row in rows:
        table.add_row(
            row.get("Name", "?"),
            row.get("CPUPerc", "—"),
            row.get("MemUsage", "—"),
            row.get("MemPerc", "—"),
            row.get("NetIO", "—"),
        )
    console.print(table)
