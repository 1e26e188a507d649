"""
CLI: ``sol-deploy env`` — resolve, check and rotate ``docker/.env``.
"""

from __future__ import annotations

import typer

from sol_deploy.cli.utils import console, err_console, exit_with, fail, get_cli_settings, make_workspace, print_json
from sol_deploy.core.errors import ExitCode, SolDeployError

app = typer.Typer(no_args_is_help=True)


@app.command("init")
def init_env(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Create or complete .env from the template, generating missing secrets.

    Existing values are kept; running it twice changes nothing.
    """
    settings = get_cli_settings(ctx)
    resolver = make_workspace(ctx, assume_yes=True).resolver()
    try:
        config = resolver.resolve(settings.env_template_path, settings.env_path)
        existing = resolver.load(settings.env_path) if settings.env_path.is_file() else None
        changed = existing is None or existing.as_dict() != config.as_dict()
        if changed:
            resolver.write(config, settings.env_template_path, settings.env_path)
    except SolDeployError as exc:
        fail(exc)

    result = resolver.validate(config, settings.required_env_keys)
    if json_out:
        print_json(
            {
                "path": str(settings.env_path),
                "changed": changed,
                "generated": list(config.generated),
                "problems": result.messages,
                "warnings": result.warnings,
            }
        )
    else:
        verb = "Wrote" if changed else "Unchanged:"
        console.print(f"[green]✓[/green] {verb} {settings.env_path} ({len(config)} keys)")
        for key in config.generated:
            console.print(f"  [cyan]generated[/cyan] {key}")
        _print_validation(result.messages, result.warnings)

    if not result.ok:
        exit_with(ExitCode.CONFIG_ERROR)


@app.command("check")
def check_env(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List every missing or placeholder-valued key in .env."""
    settings = get_cli_settings(ctx)
    resolver = make_workspace(ctx, assume_yes=True).resolver()
    if not settings.env_path.is_file():
        err_console.print(f"[red]No environment file at {settings.env_path}[/red]")
        err_console.print("[yellow]Fix:[/yellow] sol-deploy env init")
        exit_with(ExitCode.CONFIG_ERROR)

    config = resolver.load(settings.env_path, settings.env_template_path)
    result = resolver.validate(config, settings.required_env_keys)
    if json_out:
        print_json({"ok": result.ok, "problems": result.messages, "warnings": result.warnings})
    else:
        if result.ok:
            console.print(f"[green]✓[/green] {settings.env_path}: all required keys set")
        _print_validation(result.messages, result.warnings)

    if not result.ok:
        exit_with(ExitCode.CONFIG_ERROR)


@app.command("rotate")
def rotate_env(
    ctx: typer.Context,
    keys: list[str] = typer.Argument(..., help="Keys to give new random values."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Replace secrets in .env; affected services need a restart afterwards."""
    settings = get_cli_settings(ctx)
    workspace = make_workspace(ctx, assume_yes=yes)
    if not yes and not workspace.operator.confirm(f"Rotate {', '.join(keys)}?", default=False):
        err_console.print("[yellow]Aborted.[/yellow]")
        exit_with(ExitCode.INTERRUPTED)
    try:
        rotated = workspace.resolver().rotate(settings.env_path, keys)
    except SolDeployError as exc:
        fail(exc)
    for key in rotated:
        console.print(f"[green]✓[/green] rotated {key}")
    console.print("[dim]Restart the services that read these keys: sol-deploy services restart GROUP[/dim]")


def _print_validation(problems: list[str], warnings: list[str]) -> None:
    for message in problems:
        err_console.print(f"  [red]✗[/red] {message}")
    for message in warnings:
        err_console.print(f"  [yellow]![/yellow] {message}")
