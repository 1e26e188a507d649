"""Docker Compose wrapper for sol-deploy.

Thin, typed layer over the ``docker compose`` CLI for the homelab project
in ``docker/``: validate the configuration, pull, start, stop and restart
services (by name or by group), read ``ps`` state and tail logs.

Why This Matters — Homelab Operations:
    Every operational script used to build its own ``docker compose``
    command line and ``cd`` into the right directory first. The client
    holds the project directory, compose files and detected CLI flavour
    (the ``docker compose`` plugin or legacy ``docker-compose``) once,
    and every call goes through the :class:`CommandRunner` so timeouts
    and stderr capture are uniform.

Key Concepts:
    ComposeClient: ``validate_config()``, ``config_model()``, ``pull()``,
        ``up()``, ``stop()``, ``restart()``, ``ps()``, ``logs()``.
    parse_ps_output(): Accepts both JSON-lines (compose ≥ 2.21) and the
        older single JSON array format of ``ps --format json``.
    map_compose_state(): Normalises compose state strings.

Architecture Decisions:
    - Mutating calls (pull/up/stop/restart) raise ExternalCommandError on
      failure via ``CommandResult.check()``; no partial credit for a
      half-applied compose command.
    - Read calls used for diagnostics (``logs``) never raise for a
      non-zero exit; they return whatever text was captured.
    - ``pull`` has its own timeout (default: none) because image pulls
      are open-ended.

Related Modules:
    - :mod:`sol_deploy.deploy.runner` — Process execution
    - :mod:`sol_deploy.deploy.pipelines` — Compose steps
    - :mod:`sol_deploy.cli.services` — Group start/stop/update commands

Tags:
    docker, compose, containers, services, logs
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from types import EllipsisType
from typing import Any

import yaml

from sol_deploy.core.errors import ConfigError, ErrorKind, ExternalCommandError
from sol_deploy.deploy.results import ServiceState
from sol_deploy.deploy.runner import CommandResult, CommandRunner
from sol_deploy.logging import get_logger

logger = get_logger(__name__)


def map_compose_state(state: str) -> str:
    """Map Docker Compose state to our state values."""
    state = (state or "").lower()
    if state in ("running", "exited", "paused", "restarting", "created", "dead", "removing"):
        return state
    if "unhealthy" in state:
        return "unhealthy"
    if "exit" in state:
        return "exited"
    if "up" in state or "running" in state:
        return "running"
    return "unknown"


def _publishers(data: dict[str, Any]) -> list[str]:
    ports = []
    for publisher in data.get("Publishers") or []:
        published = publisher.get("PublishedPort")
        if not published:
            continue
        ports.append(f"{published}->{publisher.get('TargetPort')}/{publisher.get('Protocol', 'tcp')}")
    return sorted(set(ports))


def parse_ps_output(stdout: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` output."""
    text = stdout.strip()
    if not text:
        return []
    if text.startswith("["):
        rows = json.loads(text)
    else:
        rows = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("compose.ps_unparsed_line", line=line[:200])
    return [
        ServiceState(
            name=row.get("Service") or row.get("Name") or "unknown",
            container_name=row.get("Name"),
            image=row.get("Image"),
            state=map_compose_state(row.get("State", "")),
            health=row.get("Health") or None,
            status_text=row.get("Status"),
            ports=_publishers(row),
        )
        for row in rows
    ]


def published_ports(stdout: str) -> set[tuple[int, str]]:
    """Return ``(host_port, protocol)`` pairs held by running containers."""
    text = stdout.strip()
    if not text:
        return set()
    rows = json.loads(text) if text.startswith("[") else [json.loads(ln) for ln in text.splitlines() if ln.strip()]
    held: set[tuple[int, str]] = set()
    for row in rows:
        for publisher in row.get("Publishers") or []:
            if publisher.get("PublishedPort"):
                held.add((int(publisher["PublishedPort"]), publisher.get("Protocol") or "tcp"))
    return held


def load_compose_file(path: Path) -> dict[str, Any]:
    """Parse a compose YAML file without invoking docker.

    Raises
    ------
    ConfigError
        If the file is missing or is not a YAML mapping.
    """
    if not path.is_file():
        raise ConfigError(f"Compose file not found: {path}", kind=ErrorKind.INVALID_CONFIG).with_context(
            path=str(path)
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Compose file is not valid YAML: {path}",
            kind=ErrorKind.INVALID_CONFIG,
            problems=[str(exc)],
            cause=exc,
        ).with_context(path=str(path)) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Compose file is not a mapping: {path}", kind=ErrorKind.INVALID_CONFIG)
    return data


class ComposeClient:
    """Runs ``docker compose`` against one project directory.

    Parameters
    ----------
    runner:
        Command runner used for every invocation.
    project_dir:
        Directory holding ``docker-compose.yml`` (the homelab ``docker/``).
    compose_files:
        Extra ``-f`` files, relative to *project_dir*.
    command:
        Compose invocation, e.g. ``("docker", "compose")``; detected when
        omitted.
    timeout:
        Timeout in seconds for ordinary compose calls.
    pull_timeout:
        Timeout for ``pull``; ``None`` waits for it to finish.
    """

    def __init__(
        self,
        runner: CommandRunner,
        project_dir: Path,
        compose_files: Sequence[str] = (),
        command: Sequence[str] | None = None,
        timeout: float | None = 300.0,
        pull_timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.project_dir = project_dir
        self.compose_files = list(compose_files)
        self._command = tuple(command) if command else None
        self.timeout = timeout
        self.pull_timeout = pull_timeout

    # ── Invocation ───────────────────────────────────────────────

    @property
    def command(self) -> tuple[str, ...]:
        if self._command is None:
            self._command = self.detect_command()
        return self._command

    def detect_command(self) -> tuple[str, ...]:
        """Find the compose CLI: the docker plugin first, then docker-compose.

        Raises
        ------
        ExternalCommandError
            Kind EXECUTABLE_NOT_FOUND if neither is available.
        """
        if self.runner.which("docker") is not None:
            result = self.runner.run("docker", ["compose", "version"], timeout=30, cwd=self.project_dir)
            if result.ok:
                return ("docker", "compose")
        if self.runner.which("docker-compose") is not None:
            result = self.runner.run("docker-compose", ["version"], timeout=30, cwd=self.project_dir)
            if result.ok:
                return ("docker-compose",)
        raise ExternalCommandError(
            "Docker Compose is not available",
            kind=ErrorKind.EXECUTABLE_NOT_FOUND,
            remediation="Install the docker compose plugin: sudo apt install docker-compose-plugin",
        )

    def _file_args(self) -> list[str]:
        args: list[str] = []
        if self.compose_files:
            args.extend(["-f", "docker-compose.yml"])
            for name in self.compose_files:
                args.extend(["-f", name])
        return args

    def run(self, args: Sequence[str], timeout: float | None | EllipsisType = ...) -> CommandResult:
        """Run an arbitrary compose sub-command (never raises on exit code)."""
        program, *prefix = self.command
        effective = self.timeout if timeout is ... else timeout
        return self.runner.run(program, [*prefix, *self._file_args(), *args], effective, cwd=self.project_dir)

    # ── Configuration ────────────────────────────────────────────

    def validate_config(self) -> CommandResult:
        """``docker compose config --quiet``; raises if the project is invalid."""
        return self.run(["config", "--quiet"]).check(
            "Docker Compose configuration has errors",
            remediation="Run 'docker compose config' in the docker/ directory to see the full error",
        )

    def config_model(self) -> dict[str, Any]:
        """Return the fully interpolated compose model."""
        result = self.run(["config", "--format", "json"]).check("Could not render compose configuration")
        return json.loads(result.stdout)

    def services(self) -> list[str]:
        result = self.run(["config", "--services"]).check("Could not list compose services")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ── Lifecycle ────────────────────────────────────────────────

    def pull(self, services: Sequence[str] = ()) -> CommandResult:
        return self.run(["pull", *services], timeout=self.pull_timeout).check("Failed to pull images")

    def up(self, services: Sequence[str] = ()) -> CommandResult:
        return self.run(["up", "-d", *services]).check("Failed to start services")

    def stop(self, services: Sequence[str] = ()) -> CommandResult:
        return self.run(["stop", *services]).check("Failed to stop services")

    def restart(self, services: Sequence[str] = ()) -> CommandResult:
        return self.run(["restart", *services]).check("Failed to restart services")

    def update(self, services: Sequence[str] = ()) -> list[CommandResult]:
        """Pull newer images then recreate the affected containers."""
        return [self.pull(services), self.up(services)]

    # ── State ────────────────────────────────────────────────────

    def ps(self, include_stopped: bool = False) -> list[ServiceState]:
        args = ["ps", "--format", "json"]
        if include_stopped:
            args.append("--all")
        result = self.run(args).check("Could not read service state")
        return parse_ps_output(result.stdout)

    def running_services(self) -> set[str]:
        return {s.name for s in self.ps() if s.running}

    def held_ports(self) -> set[tuple[int, str]]:
        """Host ports published by this project's running containers."""
        result = self.run(["ps", "--format", "json"])
        if not result.ok:
            return set()
        return published_ports(result.stdout)

    def logs(self, service: str, tail: int = 20, since: str | None = None) -> str:
        """Last *tail* log lines of *service*; empty text on failure.

        *since* (an RFC 3339 timestamp) drops lines written before it, such
        as those of the container's previous run.
        """
        args = ["logs", "--no-color", "--tail", str(tail)]
        if since:
            args.extend(["--since", since])
        result = self.run([*args, service], timeout=60)
        return result.output

    def stats(self) -> list[dict[str, Any]]:
        """One ``docker stats --no-stream`` sample per running container."""
        result = self.runner.run(
            "docker", ["stats", "--no-stream", "--format", "{{json .}}"], timeout=60, cwd=self.project_dir
        ).check("Could not read container stats")
        rows = []
        for line in result.stdout.splitlines():
            if line.strip():
                rows.append(json.loads(line))
        return rows
