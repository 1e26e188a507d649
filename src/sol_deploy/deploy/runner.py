"""Command execution for sol-deploy.

Runs external CLIs (``docker``, ``git``, ``openssl``, ``rclone``) via
``subprocess`` and returns a structured :class:`CommandResult`. No Docker
SDK: every interaction with the container runtime and the tunnel client
goes through their published command lines.

Why This Matters — Homelab Operations:
    ``docker compose pull`` failing because the network blipped is a
    normal, inspectable event; ``docker`` not being installed at all is
    not. The runner keeps those apart: a non-zero exit is a *result*,
    only a missing executable (or a failed spawn) is an *error*.

Key Concepts:
    CommandRunner: ``run(command, args, timeout)`` → CommandResult.
    CommandResult: exit code, captured stdout/stderr, ``timed_out`` flag.
    CommandResult.check(): Converts a failed result into an
        ``ExternalCommandError`` (NON_ZERO_EXIT or TIMED_OUT) carrying the
        result, so stderr survives into the step report.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI and keeps the dependency footprint small.
    - Output is captured, never streamed; callers that want live output
      (interactive ``tunnel login``) ask for ``capture=False``.
    - The working directory is an explicit constructor argument; the
      process cwd is never consulted.
    - Timeout expiry kills the child (``subprocess.run`` does this) and is
      reported as ``timed_out=True`` with exit code -1.

Related Modules:
    - :mod:`sol_deploy.deploy.compose` — docker compose wrapper
    - :mod:`sol_deploy.deploy.tunnel` — cloudflared wrapper
    - :mod:`sol_deploy.testing` — ScriptedRunner test double

Tags:
    subprocess, command, docker, timeout, external-cli
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import EllipsisType

from sol_deploy.core.errors import ErrorKind, ExternalCommandError
from sol_deploy.logging import get_logger

logger = get_logger(__name__)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external process invocation."""

    command: str
    args: tuple[str, ...] = ()
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return shlex.join([self.command, *self.args])

    @property
    def output(self) -> str:
        """stdout and stderr joined, for reporting."""
        return "\n".join(part for part in (self.stdout.rstrip(), self.stderr.rstrip()) if part)

    def check(self, message: str | None = None, *, remediation: str | None = None) -> CommandResult:
        """Return self if the command succeeded, else raise.

        Raises
        ------
        ExternalCommandError
            Kind TIMED_OUT when the timeout expired, NON_ZERO_EXIT otherwise.
        """
        if self.ok:
            return self
        if self.timed_out:
            raise ExternalCommandError(
                message or f"Command timed out: {self.command_line}",
                kind=ErrorKind.TIMED_OUT,
                result=self,
                remediation=remediation,
            )
        raise ExternalCommandError(
            message or f"Command failed (exit {self.exit_code}): {self.command_line}",
            kind=ErrorKind.NON_ZERO_EXIT,
            result=self,
            remediation=remediation,
        )


@dataclass
class CommandRunner:
    """Runs external commands in a fixed working directory.

    Parameters
    ----------
    cwd:
        Absolute directory every command runs in.
    default_timeout:
        Seconds before a command is killed; ``None`` waits indefinitely.
    env:
        Extra environment variables layered over ``os.environ``.
    """

    cwd: Path
    default_timeout: float | None = 300.0
    env: Mapping[str, str] = field(default_factory=dict)

    def which(self, command: str) -> str | None:
        return shutil.which(command)

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None | EllipsisType = ...,
        *,
        cwd: Path | None = None,
        input: str | None = None,
        capture: bool = True,
    ) -> CommandResult:
        """Run *command* with *args* and capture its output.

        Never raises for a non-zero exit code.

        Raises
        ------
        ExternalCommandError
            Kind EXECUTABLE_NOT_FOUND if *command* is not on PATH or the
            process cannot be spawned.
        """
        executable = self.which(command)
        if executable is None:
            raise ExternalCommandError(
                f"Executable not found: {command}",
                kind=ErrorKind.EXECUTABLE_NOT_FOUND,
                remediation=f"Install {command} and make sure it is on PATH",
            ).with_context(command=command)

        effective_timeout = self.default_timeout if timeout is ... else timeout
        run_env = {**os.environ, **self.env} if self.env else None
        argv = [executable, *args]
        workdir = cwd or self.cwd

        logger.debug("command.exec", cmd=shlex.join([command, *args]), cwd=str(workdir))
        started = time.perf_counter()
        try:
            completed = subprocess.run(
                argv,
                cwd=workdir,
                env=run_env,
                input=input,
                capture_output=capture,
                text=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                command=command,
                args=tuple(args),
                exit_code=-1,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                timed_out=True,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            logger.warning("command.timed_out", cmd=result.command_line, timeout_s=effective_timeout)
            return result
        except OSError as exc:
            raise ExternalCommandError(
                f"Could not start {command}: {exc}",
                kind=ErrorKind.EXECUTABLE_NOT_FOUND,
                cause=exc,
            ).with_context(command=command)

        result = CommandResult(
            command=command,
            args=tuple(args),
            exit_code=completed.returncode,
            stdout=_as_text(completed.stdout),
            stderr=_as_text(completed.stderr),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        logger.debug(
            "command.done",
            cmd=result.command_line,
            exit_code=result.exit_code,
            duration_ms=round(result.duration_ms, 1),
        )
        return result
