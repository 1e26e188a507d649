"""Configuration backups.

Archives the project tree (compose files, ``.env``, tunnel config and
credentials) without the bulky per-service ``config``/``data``/``logs``
directories, encrypts it with ``openssl enc -aes-256-cbc`` using a
password file, verifies the result, optionally copies it to an rclone
remote and prunes local backups past the retention window.

Why This Matters — Homelab Operations:
    The archive contains every secret of the homelab. An unencrypted
    backup on a cloud drive is worse than no backup, and an encrypted one
    that cannot be decrypted is no backup at all. So ``verify`` decrypts
    to ``/dev/null`` with the same password file before anything is
    uploaded.

Key Concepts:
    BackupManager: ``create_archive()``, ``encrypt()``, ``verify()``,
        ``upload()``, ``prune()``; each one is a backup pipeline step.
    ensure_password_file(): Creates ``.backup_password`` (mode 0600) on
        first use.

Architecture Decisions:
    - The archive is built with :mod:`tarfile`; openssl and rclone stay
      external commands run through the CommandRunner.
    - The openssl flags match archives produced by earlier tooling, so
      old backups decrypt with the same command.
    - Pruning only ever touches ``homelab_backup_*.tar.gz*`` files inside
      the backup directory.

Tags:
    backup, tar, openssl, encryption, rclone, retention
"""

from __future__ import annotations

import fnmatch
import os
import tarfile
import time
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from sol_deploy.core.errors import ConfigError, ErrorKind, ExternalCommandError
from sol_deploy.deploy.environment import generate_password, write_private
from sol_deploy.deploy.runner import CommandRunner
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

BACKUP_PREFIX = "homelab_backup_"
BACKUP_PASSWORD_LENGTH = 32

#: Paths left out of every archive, relative to the project root.
DEFAULT_EXCLUDES = (
    ".git",
    "node_modules",
    "*.log",
    "docker/*/config",
    "docker/*/data",
    "docker/*/logs",
)


def backup_name(now: datetime | None = None) -> str:
    return BACKUP_PREFIX + (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


def is_excluded(relative: str, patterns: Sequence[str]) -> bool:
    """Match a project-relative POSIX path against exclude patterns.

    Patterns containing ``/`` match the whole path; others match the
    basename at any depth.
    """
    relative = relative.strip("/")
    if relative in ("", "."):
        return False
    name = relative.rsplit("/", 1)[-1]
    for pattern in patterns:
        if "/" in pattern:
            if fnmatch.fnmatchcase(relative, pattern):
                return True
        elif fnmatch.fnmatchcase(name, pattern):
            return True
    return False


def ensure_password_file(path: Path, length: int = BACKUP_PASSWORD_LENGTH) -> bool:
    """Create the encryption password file if missing; True if created."""
    if path.is_file():
        return False
    write_private(path, generate_password(length) + "\n", mode=0o600)
    logger.warning("backup.password_created", path=str(path))
    return True


class BackupManager:
    """Creates, encrypts, verifies, uploads and prunes backups.

    Parameters
    ----------
    runner:
        Runs openssl and rclone.
    project_root:
        Tree to archive.
    backup_dir:
        Where archives are written; always excluded from the archive.
    password_file:
        openssl ``-pass file:`` source.
    retention_days:
        Archives older than this are pruned.
    """

    def __init__(
        self,
        runner: CommandRunner,
        project_root: Path,
        backup_dir: Path,
        password_file: Path,
        retention_days: int = 30,
        excludes: Sequence[str] = DEFAULT_EXCLUDES,
    ) -> None:
        self.runner = runner
        self.project_root = project_root
        self.backup_dir = backup_dir
        self.password_file = password_file
        self.retention_days = retention_days
        self.excludes = list(excludes)
        try:
            self.excludes.append(backup_dir.relative_to(project_root).as_posix())
        except ValueError:
            pass

    def create_archive(self, now: datetime | None = None) -> Path:
        """Write ``<backup_dir>/homelab_backup_<ts>.tar.gz``."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / f"{backup_name(now)}.tar.gz"
        count = 0

        def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            nonlocal count
            relative = info.name[2:] if info.name.startswith("./") else info.name
            if is_excluded(relative, self.excludes):
                return None
            count += 1
            return info

        try:
            with tarfile.open(target, "w:gz") as archive:
                archive.add(self.project_root, arcname=".", filter=_filter)
        except (OSError, tarfile.TarError) as exc:
            target.unlink(missing_ok=True)
            failed = getattr(exc, "filename", None) or str(self.project_root)
            raise ConfigError(
                f"Could not archive {failed}",
                kind=ErrorKind.INVALID_CONFIG,
                problems=[str(exc)],
                remediation=(
                    f"Fix the permissions of {failed} (sudo chown -R $USER {failed}) "
                    "or exclude it from backups"
                ),
                cause=exc,
            ).with_context(path=str(failed))
        logger.info("backup.archived", path=str(target), entries=count, bytes=target.stat().st_size)
        return target

    def encrypt(self, archive: Path) -> Path:
        """Encrypt *archive* to ``<archive>.enc`` and delete the plain copy."""
        ensure_password_file(self.password_file)
        encrypted = archive.with_name(archive.name + ".enc")
        self.runner.run(
            "openssl",
            [
                "enc",
                "-aes-256-cbc",
                "-salt",
                "-in",
                str(archive),
                "-out",
                str(encrypted),
                "-pass",
                f"file:{self.password_file}",
            ],
        ).check("Failed to encrypt backup")
        archive.unlink()
        os.chmod(encrypted, 0o600)
        return encrypted

    def verify(self, path: Path) -> None:
        """Decrypt (or list) the backup to prove it can be restored."""
        if path.suffix == ".enc":
            self.runner.run(
                "openssl",
                [
                    "enc",
                    "-d",
                    "-aes-256-cbc",
                    "-in",
                    str(path),
                    "-out",
                    os.devnull,
                    "-pass",
                    f"file:{self.password_file}",
                ],
            ).check(
                "Backup verification failed - decryption error",
                remediation=f"Check that {self.password_file} is the password the backup was made with",
            )
            return
        try:
            with tarfile.open(path, "r:gz") as archive:
                archive.getmembers()
        except (tarfile.TarError, OSError) as exc:
            raise ConfigError(
                f"Backup verification failed - archive corruption: {path.name}",
                kind=ErrorKind.INVALID_CONFIG,
                cause=exc,
            ).with_context(path=str(path)) from exc

    def upload(self, path: Path, remote: str) -> None:
        """``rclone copy <path> <remote>``."""
        if self.runner.which("rclone") is None:
            raise ExternalCommandError(
                "rclone is not installed",
                kind=ErrorKind.EXECUTABLE_NOT_FOUND,
                remediation="sudo apt install rclone && rclone config",
            )
        self.runner.run("rclone", ["copy", str(path), remote], None).check(
            f"Failed to upload backup to {remote}",
            remediation="Check the remote with: rclone listremotes",
        )
        logger.info("backup.uploaded", remote=remote, path=path.name)

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.tar.gz*"))

    def prune(self, now: float | None = None) -> list[Path]:
        """Delete backups older than the retention window."""
        cutoff = (now if now is not None else time.time()) - self.retention_days * 86400
        removed = []
        for path in self.list_backups():
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("backup.pruned", count=len(removed))
        return removed
