"""Host dependency checks run before anything touches Docker.

Each check takes a :class:`CommandRunner`, returns a short description on
success and raises a :class:`SolDeployError` on failure. ``check_all``
runs every check and reports *all* missing tools at once instead of one
per re-run.

Two checks sit outside ``check_all``: ``check_resources`` (host memory and
free disk, advisory only) and ``check_logging_plugin``, which matters only
when a service is configured with the loki logging driver.

Tags:
    preflight, dependencies, docker, git, openssl, resources, logging-driver
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sol_deploy.core.errors import ErrorKind, ExternalCommandError
from sol_deploy.deploy.runner import CommandRunner
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

REQUIRED_EXECUTABLES = ("docker", "git", "openssl")
INSTALL_HINT = (
    "On Ubuntu/Debian: sudo apt update && sudo apt install -y docker.io docker-compose-plugin git openssl"
)


@dataclass
class DependencyReport:
    """Versions of the tools that were found."""

    versions: dict[str, str] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return ", ".join(f"{name} {version}" for name, version in self.versions.items())


# ── Executables ──────────────────────────────────────────────────────────


def check_executables(runner: CommandRunner, names: tuple[str, ...] = REQUIRED_EXECUTABLES) -> None:
    """Raise EXECUTABLE_NOT_FOUND listing every tool missing from PATH."""
    missing = [name for name in names if runner.which(name) is None]
    if missing:
        raise ExternalCommandError(
            f"Missing required dependencies: {', '.join(missing)}",
            kind=ErrorKind.EXECUTABLE_NOT_FOUND,
            problems=[f"{name} not found on PATH" for name in missing],
            remediation=INSTALL_HINT,
        )


def _first_line(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0].strip() if lines else ""


# ── Docker ───────────────────────────────────────────────────────────────


def check_docker_daemon(runner: CommandRunner) -> str:
    """``docker info``; the daemon must be up and reachable by this user."""
    result = runner.run("docker", ["info", "--format", "{{.ServerVersion}}"], timeout=30)
    result.check(
        "Docker daemon is not running or not accessible",
        remediation="Start it with: sudo systemctl start docker (and add your user to the docker group)",
    )
    return _first_line(result.stdout)


def check_compose(runner: CommandRunner) -> str:
    """The compose plugin, falling back to standalone docker-compose."""
    result = runner.run("docker", ["compose", "version", "--short"], timeout=30)
    if result.ok:
        return _first_line(result.stdout)
    if runner.which("docker-compose") is not None:
        legacy = runner.run("docker-compose", ["version", "--short"], timeout=30)
        if legacy.ok:
            return _first_line(legacy.stdout)
    raise ExternalCommandError(
        "Docker Compose is not available",
        kind=ErrorKind.EXECUTABLE_NOT_FOUND,
        result=result,
        remediation="sudo apt install -y docker-compose-plugin",
    )


# ── Host resources ───────────────────────────────────────────────────────

GIB = 1024**3


def total_memory_bytes() -> int | None:
    """Physical memory of the host, or None where sysconf cannot tell."""
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return None


def free_disk_bytes(path: Path) -> int | None:
    try:
        return shutil.disk_usage(path).free
    except OSError:
        return None


@dataclass
class ResourceReport:
    """Host memory and free disk, with advisory warnings."""

    memory_gb: float | None = None
    disk_free_gb: float | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        memory = f"{self.memory_gb:.1f} GB" if self.memory_gb is not None else "unknown"
        disk = f"{self.disk_free_gb:.1f} GB" if self.disk_free_gb is not None else "unknown"
        return f"memory {memory}, free disk {disk}"


def check_resources(path: Path, min_memory_gb: float = 4.0, min_disk_gb: float = 50.0) -> ResourceReport:
    """Compare host memory and free space under *path* with the minimums.

    Never raises: a small host can still run part of the stack, so a
    shortfall is reported as a warning.
    """
    report = ResourceReport()
    memory = total_memory_bytes()
    if memory is not None:
        report.memory_gb = round(memory / GIB, 1)
        if report.memory_gb < min_memory_gb:
            report.warnings.append(
                f"memory {report.memory_gb:g} GB is below {min_memory_gb:g} GB; not every service may start"
            )
    disk = free_disk_bytes(path)
    if disk is not None:
        report.disk_free_gb = round(disk / GIB, 1)
        if report.disk_free_gb < min_disk_gb:
            report.warnings.append(
                f"free disk {report.disk_free_gb:g} GB under {path} is below {min_disk_gb:g} GB; media may not fit"
            )
    if report.warnings:
        logger.warning("preflight.resources_low", warnings=report.warnings)
    return report


# ── Logging driver plugin ────────────────────────────────────────────────


def plugin_install_command(alias: str = "loki", image: str = "grafana/loki-docker-driver:latest") -> str:
    return f"docker plugin install {image} --alias {alias} --grant-all-permissions"


def services_using_driver(compose_model: Mapping[str, Any], driver: str) -> list[str]:
    """Services whose ``logging.driver`` is *driver* (tag suffix ignored)."""
    services = []
    for name, service in (compose_model.get("services") or {}).items():
        configured = str(((service or {}).get("logging") or {}).get("driver") or "")
        if configured and configured.split(":", 1)[0] == driver:
            services.append(name)
    return sorted(services)


def installed_plugins(runner: CommandRunner) -> list[str]:
    result = runner.run("docker", ["plugin", "ls", "--format", "{{.Name}}"], timeout=30).check(
        "Could not list docker plugins"
    )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def check_logging_plugin(
    runner: CommandRunner,
    alias: str = "loki",
    image: str = "grafana/loki-docker-driver:latest",
) -> str:
    """Return the installed plugin name for *alias*.

    Raises
    ------
    ExternalCommandError
        EXECUTABLE_NOT_FOUND with the install command as remediation.
    """
    for name in installed_plugins(runner):
        if name.split(":", 1)[0] == alias:
            return name
    raise ExternalCommandError(
        f"Docker logging plugin '{alias}' is not installed",
        kind=ErrorKind.EXECUTABLE_NOT_FOUND,
        problems=[f"services configured with logging driver '{alias}' will not start"],
        remediation=plugin_install_command(alias, image),
    )


# ── All ──────────────────────────────────────────────────────────────────


def check_all(runner: CommandRunner) -> DependencyReport:
    """Run every check in order; first failure propagates."""
    check_executables(runner)
    report = DependencyReport()
    report.versions["docker"] = check_docker_daemon(runner)
    report.versions["compose"] = check_compose(runner)
    for name in ("git", "openssl"):
        result = runner.run(name, ["version"] if name == "openssl" else ["--version"], timeout=30)
        report.versions[name] = _first_line(result.stdout) if result.ok else "unknown"
    logger.info("preflight.ok", **report.versions)
    return report
