"""Test harness: command-runner and operator doubles, run assertions.

Testing pipelines without Docker means replacing the CommandRunner. The
doubles here record every call and answer from a script, so a test reads
as "when compose is asked for ``ps``, answer this".

ARCHITECTURE
────────────
::

    Test doubles:
      ScriptedRunner      → CommandRunner returning scripted results
      ScriptedOperator    → Operator with queued answers

    Assertion helpers:
      assert_run_succeeded(run)
      assert_run_failed_at(run, step, kind=None)
      assert_steps(run, [names...])

Example::

    runner = ScriptedRunner(tmp_path)
    runner.script("docker", ["compose", "ps"], stdout=PS_JSON)
    runner.script("docker", ["compose", "up"], exit_code=1, stderr="boom")
    run = run_deploy(Workspace(settings, runner))
    assert_run_failed_at(run, "start-containers", ErrorKind.NON_ZERO_EXIT)

Tags:
    testing, doubles, mocks, harness, assertions
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import EllipsisType

from sol_deploy.core.errors import ErrorKind, ExternalCommandError
from sol_deploy.deploy.results import PipelineRun, RunOutcome
from sol_deploy.deploy.runner import CommandResult, CommandRunner

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass
class _Scripted:
    command: str
    prefix: tuple[str, ...]
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    times: int | None = None

    def matches(self, command: str, args: tuple[str, ...]) -> bool:
        if command != self.command:
            return False
        # Prefix elements must appear in order; compose -f flags may sit between.
        position = 0
        for wanted in self.prefix:
            try:
                position = args.index(wanted, position) + 1
            except ValueError:
                return False
        return True


@dataclass
class RecordedCall:
    command: str
    args: tuple[str, ...]
    cwd: Path | None
    timeout: float | None

    @property
    def line(self) -> str:
        return " ".join((self.command, *self.args))


class ScriptedRunner(CommandRunner):
    """CommandRunner that never spawns a process.

    Results are matched against scripts in reverse registration order
    (last registered wins), by command name and an ordered subsequence of
    arguments. Unscripted calls succeed with empty output unless
    ``strict=True``, which raises ``AssertionError``.

    Parameters
    ----------
    cwd
        Passed to CommandRunner.
    missing
        Executables ``which()`` should report as absent.
    """

    def __init__(self, cwd: Path, missing: Sequence[str] = (), strict: bool = False) -> None:
        super().__init__(cwd=cwd)
        self.missing = set(missing)
        self.strict = strict
        self.calls: list[RecordedCall] = []
        self._scripts: deque[_Scripted] = deque()

    def script(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        times: int | None = None,
    ) -> ScriptedRunner:
        """Register a result; ``times`` limits how often it is used."""
        self._scripts.appendleft(
            _Scripted(command, tuple(args), exit_code, stdout, stderr, timed_out, times)
        )
        return self

    def which(self, command: str) -> str | None:
        if command in self.missing:
            return None
        return f"/usr/bin/{command}"

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
        args = tuple(args)
        effective = self.default_timeout if timeout is ... else timeout
        self.calls.append(RecordedCall(command, args, cwd, effective))
        if command in self.missing:
            raise ExternalCommandError(f"Executable not found: {command}", kind=ErrorKind.EXECUTABLE_NOT_FOUND)

        for scripted in self._scripts:
            if scripted.times == 0 or not scripted.matches(command, args):
                continue
            if scripted.times is not None:
                scripted.times -= 1
            return CommandResult(
                command=command,
                args=args,
                exit_code=-1 if scripted.timed_out else scripted.exit_code,
                stdout=scripted.stdout,
                stderr=scripted.stderr,
                timed_out=scripted.timed_out,
            )
        if self.strict:
            raise AssertionError(f"Unscripted command: {command} {' '.join(args)}")
        return CommandResult(command=command, args=args)

    def called(self, command: str, *args: str) -> list[RecordedCall]:
        """Recorded calls matching *command* and an ordered subsequence of *args*."""
        probe = _Scripted(command, tuple(args))
        return [c for c in self.calls if probe.matches(c.command, c.args)]


class ScriptedOperator:
    """Operator answering from queues; records every prompt.

    Example::

        operator = ScriptedOperator(confirms=[True], answers=["3f1c...uuid"])
    """

    def __init__(
        self,
        confirms: Sequence[bool] = (),
        answers: Sequence[str] = (),
        secrets: Sequence[str] = (),
    ) -> None:
        self._confirms = deque(confirms)
        self._answers = deque(answers)
        self._secrets = deque(secrets)
        self.prompts: list[str] = []

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.prompts.append(prompt)
        return self._confirms.popleft() if self._confirms else default

    def prompt(self, label: str, default: str | None = None) -> str:
        self.prompts.append(label)
        if self._answers:
            return self._answers.popleft()
        if default is None:
            raise AssertionError(f"No scripted answer for prompt: {label}")
        return default

    def prompt_secret(self, label: str) -> str:
        self.prompts.append(label)
        if not self._secrets:
            raise AssertionError(f"No scripted secret for prompt: {label}")
        return self._secrets.popleft()


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


def assert_run_succeeded(run: PipelineRun) -> None:
    assert run.outcome == RunOutcome.SUCCESS, (
        f"Expected SUCCESS, got {run.outcome.value}: "
        + "; ".join(f"{r.step_name}: {r.message}" for r in run.failed_steps)
    )


def assert_run_failed_at(run: PipelineRun, step: str, kind: ErrorKind | None = None) -> None:
    failure = run.fatal_failure
    assert failure is not None, f"Expected a fatal failure, got {run.outcome.value}"
    assert failure.step_name == step, f"Expected failure at {step!r}, got {failure.step_name!r}"
    if kind is not None:
        assert failure.error_kind == kind, f"Expected {kind.value}, got {failure.error_kind}"


def assert_steps(run: PipelineRun, names: Sequence[str]) -> None:
    actual = [r.step_name for r in run.step_results]
    assert actual == list(names), f"Expected steps {list(names)}, got {actual}"


@dataclass
class ComposeService:
    """Row builder for scripted ``docker compose ps --format json`` output."""

    name: str
    state: str = "running"
    published: list[tuple[int, int, str]] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(
            {
                "Service": self.name,
                "Name": f"{self.name}",
                "Image": f"{self.name}:latest",
                "State": self.state,
                "Health": "",
                "Status": "Up 2 minutes" if self.state == "running" else "Exited (0)",
                "Publishers": [
                    {"URL": "0.0.0.0", "TargetPort": target, "PublishedPort": host, "Protocol": proto}
                    for host, target, proto in self.published
                ],
            }
        )


def ps_output(*services: ComposeService) -> str:
    return "\n".join(s.to_json() for s in services) + "\n"
