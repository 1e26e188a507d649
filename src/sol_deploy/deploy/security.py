"""Advisory security posture checks.

Looks for the mistakes that actually happen on a homelab box: a ``.env``
full of passwords left world-readable or committed to git, tunnel
credentials readable by everyone, default passwords, and containers with
root-equivalent access to the host. Findings are advice; privileged
containers and mounted docker sockets are reported, never changed.
"""

from __future__ import annotations

import stat
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sol_deploy.logging import get_logger

logger = get_logger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"
MIN_PASSWORD_LENGTH = 12
WEAK_PASSWORDS = frozenset({"password", "admin", "changeme", "123456", "12345678", "homelab", "secret"})


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class SecurityFinding:
    check: str
    severity: Severity
    message: str
    remediation: str | None = None

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.check}: {self.message}"


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def check_file_mode(path: Path, max_mode: int, check: str) -> SecurityFinding | None:
    """Flag *path* if it grants permissions beyond *max_mode*."""
    if not path.is_file():
        return None
    mode = _mode(path)
    if mode & ~max_mode:
        return SecurityFinding(
            check,
            Severity.ERROR,
            f"{path.name} has mode {mode:o}, expected at most {max_mode:o}",
            f"chmod {max_mode:o} {path}",
        )
    return None


def check_gitignored(project_root: Path, env_path: Path) -> SecurityFinding | None:
    """The env file must be excluded from git."""
    gitignore = project_root / ".gitignore"
    if not (project_root / ".git").exists():
        return None
    patterns = []
    if gitignore.is_file():
        for line in gitignore.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith(("#", "!")):
                patterns.append(line.lstrip("/"))
    try:
        relative = env_path.relative_to(project_root).as_posix()
    except ValueError:
        return None
    accepted = {env_path.name, relative, "*.env", "**/.env", f"**/{env_path.name}", ".env*"}
    if accepted.intersection(patterns):
        return None
    return SecurityFinding(
        "env-gitignored",
        Severity.ERROR,
        f"{relative} is not listed in .gitignore; secrets may be committed",
        f"echo '{relative}' >> .gitignore",
    )


def check_passwords(env: Mapping[str, str], keys: Iterable[str]) -> list[SecurityFinding]:
    findings = []
    for key in keys:
        value = env.get(key, "")
        if not value:
            continue
        if value.lower() in WEAK_PASSWORDS or len(value) < MIN_PASSWORD_LENGTH:
            findings.append(
                SecurityFinding(
                    "weak-password",
                    Severity.ERROR,
                    f"{key} is a weak password",
                    f"sol-deploy env rotate {key}",
                )
            )
    return findings


def _mounts(service: Mapping[str, Any]) -> list[str]:
    mounts = []
    for volume in service.get("volumes") or []:
        if isinstance(volume, Mapping):
            mounts.append(str(volume.get("source") or ""))
        else:
            mounts.append(str(volume).split(":", 1)[0])
    return mounts


def check_containers(model: Mapping[str, Any]) -> list[SecurityFinding]:
    """Report privileged services and docker socket mounts."""
    findings = []
    for name, service in sorted((model.get("services") or {}).items()):
        service = service or {}
        if service.get("privileged"):
            findings.append(
                SecurityFinding("privileged", Severity.WARNING, f"{name} runs privileged")
            )
        if DOCKER_SOCKET in _mounts(service):
            findings.append(
                SecurityFinding(
                    "docker-socket",
                    Severity.WARNING,
                    f"{name} mounts {DOCKER_SOCKET} (root-equivalent host access)",
                    "Mount it read-only or put a socket proxy in front of it",
                )
            )
    return findings


def scan(
    *,
    project_root: Path,
    env_path: Path,
    env: Mapping[str, str],
    password_keys: Iterable[str],
    credentials_files: Iterable[Path] = (),
    backup_password_path: Path | None = None,
    compose_model: Mapping[str, Any] | None = None,
) -> list[SecurityFinding]:
    """Run every posture check and return all findings."""
    findings: list[SecurityFinding] = []
    for finding in (
        check_file_mode(env_path, 0o600, "env-permissions"),
        check_gitignored(project_root, env_path),
    ):
        if finding is not None:
            findings.append(finding)
    for path in credentials_files:
        finding = check_file_mode(path, 0o640, "tunnel-credentials-permissions")
        if finding is not None:
            findings.append(finding)
    if backup_password_path is not None:
        finding = check_file_mode(backup_password_path, 0o600, "backup-password-permissions")
        if finding is not None:
            findings.append(finding)
    findings.extend(check_passwords(env, password_keys))
    if compose_model is not None:
        findings.extend(check_containers(compose_model))
    logger.info(
        "security.scanned",
        errors=sum(1 for f in findings if f.severity == Severity.ERROR),
        warnings=sum(1 for f in findings if f.severity == Severity.WARNING),
    )
    return findings
