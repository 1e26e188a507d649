"""
CLI: ``sol-deploy tunnel`` — Cloudflare tunnel state, setup and routes.

Usage::

    sol-deploy tunnel status
    sol-deploy tunnel setup                       # Interactive, resumable
    sol-deploy tunnel check                       # Probe public hostnames
    sol-deploy tunnel route add plex.example.com http://plex:32400
    sol-deploy tunnel route remove plex.example.com
"""

from __future__ import annotations

import typer
from rich.table import Table

from sol_deploy.cli.utils import console, err_console, exit_with, fail, make_workspace, print_json, print_probes
from sol_deploy.core.errors import ExitCode, SolDeployError

app = typer.Typer(no_args_is_help=True)
route_app = typer.Typer(no_args_is_help=True)
app.add_typer(route_app, name="route", help="Ingress routes and their DNS records.")

_ROUTE_STYLE = {
    "REGISTERED": "green",
    "ALREADY_EXISTS": "green",
    "FAILED": "red",
    "UNKNOWN": "yellow",
}


def _print_routes(routes: list) -> None:
    table = Table(title="DNS Routes")
    table.add_column("Hostname", style="bold")
    table.add_column("Result")
    table.add_column("Message", overflow="fold")
    for r in routes:
        style = _ROUTE_STYLE.get(r.status.value, "white")
        table.add_row(r.hostname, f"[{style}]{r.status.value}[/{style}]", r.message or "—")
    console.print(table)


@app.command("status")
def tunnel_status(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the setup state, tunnel id and ingress hostnames."""
    tunnel = make_workspace(ctx, assume_yes=True).tunnel()
    try:
        state = tunnel.detect_state()
        hostnames = tunnel.load_config().hostnames if tunnel.config_path.is_file() else []
    except SolDeployError as exc:
        fail(exc)

    tunnel_id = None
    id_problem = None
    try:
        tunnel_id = tunnel.current_id()
    except SolDeployError as exc:
        id_problem = exc.message

    if json_out:
        print_json(
            {
                "state": state.value,
                "tunnel_id": tunnel_id,
                "problem": id_problem,
                "credentials": tunnel_id is not None and tunnel.validate_credentials(tunnel_id),
                "hostnames": hostnames,
            }
        )
        return

    console.print(f"[bold]State:[/bold] {state.value}")
    console.print(f"[bold]Tunnel:[/bold] {tunnel_id or '—'}")
    if id_problem:
        console.print(f"[yellow]![/yellow] {id_problem}")
    if tunnel_id is not None:
        readable = tunnel.validate_credentials(tunnel_id)
        mark = "[green]✓ readable[/green]" if readable else "[red]✗ missing or unreadable[/red]"
        console.print(f"[bold]Credentials:[/bold] {mark}")
    console.print(f"[bold]Hostnames:[/bold] {len(hostnames)}")
    for hostname in hostnames:
        console.print(f"  • {hostname}")


@app.command("setup")
def tunnel_setup(
    ctx: typer.Context,
    hostname: list[str] = typer.Option([], "--hostname", "-H", help="Register only these hostnames. Repeatable."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Accept defaults instead of prompting."),
) -> None:
    """Log in, create or reuse a tunnel, fetch credentials and route DNS.

    Safe to re-run: finished steps are skipped.
    """
    workspace = make_workspace(ctx, assume_yes=yes)
    tunnel = workspace.tunnel()
    try:
        report = tunnel.setup(workspace.operator, hostname or None)
    except SolDeployError as exc:
        fail(exc)

    for action in report.actions:
        console.print(f"[green]✓[/green] {action}")
    if report.routes:
        _print_routes(report.routes)
    console.print(f"\n[bold]{report.state.value}[/bold] — tunnel {report.tunnel_id}")
    console.print("[dim]Restart cloudflared to pick up changes: sol-deploy services restart infrastructure[/dim]")

    if report.failed_routes:
        exit_with(ExitCode.PARTIAL_FAILURE)


@app.command("check")
def tunnel_check(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
    insecure: bool = typer.Option(False, "--insecure", help="Do not verify TLS certificates."),
) -> None:
    """Verify tunnel artifacts, then probe every public hostname over HTTPS."""
    from sol_deploy.deploy.health import targets_from_hostnames

    workspace = make_workspace(ctx, assume_yes=True)
    tunnel = workspace.tunnel()
    try:
        tunnel.check()
        hostnames = tunnel.load_config().hostnames
    except SolDeployError as exc:
        fail(exc)

    results = workspace.health(verify_tls=not insecure).probe(targets_from_hostnames(hostnames))
    if json_out:
        print_json([r.model_dump(mode="json") for r in results])
    elif results:
        print_probes(results)
    else:
        console.print("[dim]No ingress hostnames configured.[/dim]")

    if any(not r.is_up for r in results):
        exit_with(ExitCode.PARTIAL_FAILURE)


# ── Routes ───────────────────────────────────────────────────────────────


@route_app.command("add")
def route_add(
    ctx: typer.Context,
    hostname: str = typer.Argument(..., help="Public hostname, e.g. plex.example.com"),
    service_url: str = typer.Argument(..., help="Origin URL, e.g. http://plex:32400"),
    no_tls_verify: bool = typer.Option(False, "--no-tls-verify", help="Accept self-signed origin certificates."),
) -> None:
    """Add an ingress rule and register its DNS record."""
    from sol_deploy.deploy.tunnel import IngressRoute

    tunnel = make_workspace(ctx, assume_yes=True).tunnel()
    try:
        routes = tunnel.add_routes([IngressRoute(hostname, service_url, tls_verify=not no_tls_verify)])
    except SolDeployError as exc:
        fail(exc)

    _print_routes(routes)
    if not all(r.ok for r in routes):
        exit_with(ExitCode.PARTIAL_FAILURE)


@route_app.command("remove")
def route_remove(
    ctx: typer.Context,
    hostnames: list[str] = typer.Argument(..., help="Hostnames to drop from the ingress list."),
) -> None:
    """Remove ingress rules; the DNS record is left for the dashboard."""
    tunnel = make_workspace(ctx, assume_yes=True).tunnel()
    try:
        removed = tunnel.remove_routes(hostnames)
    except SolDeployError as exc:
        fail(exc)

    for hostname in removed:
        console.print(f"[green]✓[/green] removed {hostname}")
    missing = [h for h in hostnames if h not in removed]
    for hostname in missing:
        err_console.print(f"[yellow]![/yellow] no ingress rule for {hostname}")
    if removed:
        console.print("[dim]Delete the CNAME records in the Cloudflare dashboard.[/dim]")
    if missing:
        exit_with(ExitCode.PARTIAL_FAILURE)
