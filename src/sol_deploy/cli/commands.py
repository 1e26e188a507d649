"""
CLI: top-level pipeline commands — validate, deploy, status, backup,
rollback and mark-good.

Usage::

    sol-deploy validate                 # Pre-flight checks, changes nothing
    sol-deploy deploy --yes             # Full deploy pipeline
    sol-deploy deploy --skip-pull       # Deploy with cached images
    sol-deploy status                   # Compose state + HTTP probes
    sol-deploy backup --remote proton:homelab-backups/
    sol-deploy mark-good                # Tag HEAD as last-good
    sol-deploy rollback                 # Restore docker/ from last-good

Exit codes: 0 success, 1 partial failure, 10 configuration, 11 port
conflict, 20/21/22 external command failed / timed out / missing,
70 internal, 130 interrupted.
"""

from __future__ import annotations

from pathlib import Path

import typer

from sol_deploy.cli.utils import (
    console,
    err_console,
    exit_with,
    fail,
    finish_run,
    get_cli_settings,
    make_workspace,
    print_json,
    print_probes,
    print_services,
)
from sol_deploy.core.errors import ExitCode, SolDeployError

# ── Validate ─────────────────────────────────────────────────────────────


def validate(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output the run as JSON."),
) -> None:
    """Check dependencies, environment, compose syntax, ports and tunnel config.

    Changes nothing on the host.
    """
    from sol_deploy.deploy.pipelines import run_validate

    workspace = make_workspace(ctx, assume_yes=True)
    finish_run(run_validate(workspace), as_json=json_out)


# ── Deploy ───────────────────────────────────────────────────────────────


def deploy(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    skip_pull: bool = typer.Option(False, "--skip-pull", help="Use cached images."),
    json_out: bool = typer.Option(False, "--json", help="Output the run as JSON."),
    report_dir: Path | None = typer.Option(
        None, "--report-dir", help="Write {run_id}/summary.json under this directory."
    ),
) -> None:
    """Resolve .env, validate, start every service and check their health."""
    from sol_deploy.deploy.pipelines import run_deploy

    workspace = make_workspace(ctx, assume_yes=yes)
    if not yes and not workspace.operator.confirm(f"Deploy the homelab in {workspace.root}?", default=True):
        err_console.print("[yellow]Aborted.[/yellow]")
        exit_with(ExitCode.INTERRUPTED)

    if not json_out:
        console.print(f"[bold green]▲ deploy[/] — {workspace.root}")

    if report_dir is None and workspace.settings.report_dir:
        report_dir = workspace.settings.path(workspace.settings.report_dir)
    finish_run(run_deploy(workspace, skip_pull=skip_pull), as_json=json_out, report_dir=report_dir)


# ── Status ───────────────────────────────────────────────────────────────


def status(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
    no_probe: bool = typer.Option(False, "--no-probe", help="Skip HTTP health probes."),
    target: list[str] = typer.Option([], "--target", "-t", help="Extra probe target as name=url. Repeatable."),
) -> None:
    """Show container state and probe each service's web UI."""
    from sol_deploy.deploy.health import parse_target, targets_from_ports

    workspace = make_workspace(ctx, assume_yes=True)
    try:
        services = workspace.compose().ps(include_stopped=True)
    except SolDeployError as exc:
        fail(exc)

    probes = []
    if not no_probe:
        running = {s.name for s in services if s.running}
        local = {n: p for n, p in workspace.settings.local_services.items() if n in running}
        targets = targets_from_ports(local) + [parse_target(t) for t in target]
        probes = workspace.health().probe(targets)

    if json_out:
        print_json(
            {
                "services": [s.model_dump(mode="json") for s in services],
                "probes": [p.model_dump(mode="json") for p in probes],
            }
        )
    else:
        if services:
            print_services(services)
        else:
            console.print("[dim]No containers.[/dim]")
        if probes:
            print_probes(probes)

    if any(not p.is_up for p in probes):
        exit_with(ExitCode.PARTIAL_FAILURE)


# ── Backup ───────────────────────────────────────────────────────────────


def backup(
    ctx: typer.Context,
    no_encrypt: bool = typer.Option(False, "--no-encrypt", help="Leave the archive unencrypted."),
    remote: str | None = typer.Option(None, "--remote", help="rclone remote to copy the backup to."),
    json_out: bool = typer.Option(False, "--json", help="Output the run as JSON."),
) -> None:
    """Archive, encrypt and verify the homelab configuration."""
    from sol_deploy.deploy.pipelines import run_backup

    workspace = make_workspace(ctx, assume_yes=True)
    encrypt = False if no_encrypt else None
    finish_run(run_backup(workspace, encrypt=encrypt, remote=remote), as_json=json_out)


# ── Last known good ──────────────────────────────────────────────────────


def mark_good(
    ctx: typer.Context,
    tag: str | None = typer.Option(None, "--tag", help="Tag name (default: last-good)."),
) -> None:
    """Tag the current commit as the last known good deployment."""
    workspace = make_workspace(ctx, assume_yes=True)
    name = tag or workspace.settings.last_good_tag
    try:
        commit = workspace.git().tag(name)
    except SolDeployError as exc:
        fail(exc)
    console.print(f"[green]✓[/green] {name} → {commit[:12]}")
    console.print(f"[dim]Push it with: git push -f origin {name}[/dim]")


def rollback(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    tag: str | None = typer.Option(None, "--tag", help="Tag to restore (default: last-good)."),
    json_out: bool = typer.Option(False, "--json", help="Output the run as JSON."),
) -> None:
    """Restore the compose directory from the last-good tag and restart."""
    from sol_deploy.deploy.pipelines import run_rollback

    workspace = make_workspace(ctx, assume_yes=yes)
    name = tag or get_cli_settings(ctx).last_good_tag
    prompt = f"Overwrite {workspace.settings.docker_dir}/ with the files from {name}?"
    if not yes and not workspace.operator.confirm(prompt, default=False):
        err_console.print("[yellow]Aborted.[/yellow]")
        exit_with(ExitCode.INTERRUPTED)
    finish_run(run_rollback(workspace, tag=name), as_json=json_out)
