"""Last-known-good tagging and rollback through git.

A deploy that passed its health checks can be tagged (``git tag -f
last-good``). Rolling back restores the compose directory from that tag
with ``git checkout <tag> -- docker`` and brings the stack up again. Only
tracked files are restored; ``.env`` and tunnel credentials are not in
git and are left as they are.
"""

from __future__ import annotations

from pathlib import Path

from sol_deploy.core.errors import ConfigError, ErrorKind
from sol_deploy.deploy.runner import CommandResult, CommandRunner
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TAG = "last-good"


class GitRepository:
    """The handful of git operations rollback needs."""

    def __init__(self, runner: CommandRunner, root: Path) -> None:
        self.runner = runner
        self.root = root

    def _git(self, *args: str) -> CommandResult:
        return self.runner.run("git", list(args), timeout=60, cwd=self.root)

    def is_repository(self) -> bool:
        return self._git("rev-parse", "--is-inside-work-tree").ok

    def require_repository(self) -> None:
        if not self.is_repository():
            raise ConfigError(
                f"{self.root} is not a git repository",
                kind=ErrorKind.INVALID_CONFIG,
                remediation="Initialise it with: git init && git add -A && git commit -m 'initial'",
            )

    def resolve(self, ref: str) -> str | None:
        """Commit hash for *ref*, or None if it does not exist."""
        result = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        return result.stdout.strip() if result.ok and result.stdout.strip() else None

    def tag(self, name: str = DEFAULT_TAG, ref: str = "HEAD") -> str:
        """Move tag *name* to *ref*; returns the tagged commit."""
        self.require_repository()
        self._git("tag", "-f", name, ref).check(f"Failed to tag {ref} as {name}")
        commit = self.resolve(name) or ""
        logger.info("git.tagged", tag=name, commit=commit[:12])
        return commit

    def require_tag(self, name: str = DEFAULT_TAG) -> str:
        self.require_repository()
        commit = self.resolve(name)
        if commit is None:
            raise ConfigError(
                f"No '{name}' tag to roll back to",
                kind=ErrorKind.INVALID_CONFIG,
                remediation="Tag a working deployment first: sol-deploy mark-good",
            )
        return commit

    def changed_paths(self, ref: str, path: str) -> list[str]:
        """Files under *path* that differ between *ref* and the working tree."""
        result = self._git("diff", "--name-only", ref, "--", path)
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    def checkout_paths(self, ref: str, path: str) -> list[str]:
        """``git checkout <ref> -- <path>``; returns the files it changed."""
        changed = self.changed_paths(ref, path)
        self._git("checkout", ref, "--", path).check(
            f"Failed to restore {path} from {ref}",
            remediation=f"Inspect with: git diff {ref} -- {path}",
        )
        logger.info("git.restored", ref=ref, path=path, files=len(changed))
        return changed
