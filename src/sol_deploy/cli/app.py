"""
Root Typer application for the sol-deploy CLI.

Pipeline commands (validate, deploy, status, backup, rollback,
mark-good) sit at the top level; ``env``, ``tunnel`` and ``services``
are sub-apps.
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

try:
    import typer
    from typer import Typer
except ImportError:  # pragma: no cover
    print("typer is required for the CLI.  Install with:  pip install sol-deploy")
    sys.exit(1)

app = Typer(
    name="sol-deploy",
    help="sol-deploy — deploy and operate a Docker Compose homelab behind a Cloudflare tunnel.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("sol-deploy")
        except PackageNotFoundError:
            from sol_deploy import __version__ as v
        typer.echo(f"sol-deploy {v}")
        raise typer.Exit()


def _terminate(signum: int, frame: object) -> None:
    # SIGTERM (docker stop, systemd) cancels the running step like Ctrl-C.
    raise KeyboardInterrupt


@app.callback()
def main(
    ctx: typer.Context,
    root: Path | None = typer.Option(
        None,
        "--root",
        help="Homelab project root (default: walk up from cwd to a docker/ or .git directory).",
        file_okay=False,
        resolve_path=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json."),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """sol-deploy CLI — validate, deploy, check and back up the homelab."""
    from sol_deploy.logging import configure_logging

    configure_logging(level=log_level, format=log_format, force=log_level is not None or log_format is not None)

    state = ctx.ensure_object(dict)
    if root is not None:
        state["root"] = root
        state.pop("settings", None)

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _terminate)


# ── Command registration ─────────────────────────────────────────────────

from sol_deploy.cli import commands  # noqa: E402
from sol_deploy.cli.env import app as env_app  # noqa: E402
from sol_deploy.cli.services import app as services_app  # noqa: E402
from sol_deploy.cli.tunnel import app as tunnel_app  # noqa: E402

app.command("validate")(commands.validate)
app.command("deploy")(commands.deploy)
app.command("status")(commands.status)
app.command("backup")(commands.backup)
app.command("rollback")(commands.rollback)
app.command("mark-good")(commands.mark_good)

app.add_typer(env_app, name="env", help="Environment file: init, check, rotate.")
app.add_typer(tunnel_app, name="tunnel", help="Cloudflare tunnel setup, checks and routes.")
app.add_typer(services_app, name="services", help="Service groups, logs and resources.")
