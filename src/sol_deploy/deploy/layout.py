"""Host directories the compose services bind-mount.

Docker creates a missing bind-mount source as ``root:root``. Containers
running as ``PUID``/``PGID`` then cannot write to it, so every data
directory is created by the operator's user before ``docker compose up``.
Only directories below ``docker/`` are handled; nothing here needs sudo.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sol_deploy.core.errors import ConfigError, ErrorKind
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

#: Directories that other users (the containers) must be able to traverse.
OPEN_MODE = 0o755


@dataclass
class LayoutReport:
    created: list[str] = field(default_factory=list)
    chmodded: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.chmodded)


def _inside(base: Path, relative: str) -> Path:
    path = (base / relative).resolve()
    if path != base.resolve() and base.resolve() not in path.parents:
        raise ConfigError(
            f"Data directory escapes {base}: {relative}",
            kind=ErrorKind.INVALID_CONFIG,
            remediation="Use paths relative to the docker directory in SOL_DEPLOY_DATA_DIRS",
        )
    return path


def prepare_directories(base: Path, data_dirs: Sequence[str], open_dirs: Sequence[str] = ()) -> LayoutReport:
    """Create *data_dirs* below *base* and make *open_dirs* mode 0755.

    Idempotent: existing directories are kept as they are and a directory
    already at 0755 is not touched again.

    Raises
    ------
    ConfigError
        If a path leaves *base*, or exists as a file, or cannot be created.
    """
    report = LayoutReport()
    for relative in dict.fromkeys([*data_dirs, *open_dirs]):
        path = _inside(base, relative)
        if path.is_dir():
            continue
        if path.exists():
            raise ConfigError(
                f"Expected a directory but found a file: {path}",
                kind=ErrorKind.INVALID_CONFIG,
                remediation=f"Move {path} out of the way and re-run the deploy",
            ).with_context(path=str(path))
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(
                f"Could not create {path}",
                kind=ErrorKind.INVALID_CONFIG,
                problems=[str(exc)],
                remediation=f"sudo chown -R $USER {base}",
                cause=exc,
            ).with_context(path=str(path)) from exc
        report.created.append(relative)

    for relative in open_dirs:
        path = _inside(base, relative)
        if stat.S_IMODE(path.stat().st_mode) != OPEN_MODE:
            try:
                os.chmod(path, OPEN_MODE)
            except OSError as exc:
                raise ConfigError(
                    f"Could not chmod {OPEN_MODE:o} {path}",
                    kind=ErrorKind.INVALID_CONFIG,
                    problems=[str(exc)],
                    remediation=f"sudo chmod {OPEN_MODE:o} {path}",
                    cause=exc,
                ).with_context(path=str(path)) from exc
            report.chmodded.append(relative)

    if report.changed:
        logger.info("layout.prepared", created=report.created, chmodded=report.chmodded)
    return report
