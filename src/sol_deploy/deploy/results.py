"""Result models for sol-deploy.

Pydantic v2 models that capture structured outcomes of pipeline runs,
compose service state and health probes. Every model round-trips through
``model_dump_json()`` so ``--json`` output and on-disk run reports are the
same document.

Why This Matters — Homelab Operations:
    A cron-driven ``sol-deploy deploy --json`` is only useful if the
    output says *which* step failed, with what error kind and what stderr.
    ``PipelineRun.outcome`` and ``PipelineRun.exit_code`` let automation
    branch without parsing log text.

Key Concepts:
    RunOutcome: SUCCESS, PARTIAL_FAILURE, FATAL_FAILURE, CANCELLED.
    StepResult: Immutable record of one executed step.
    PipelineRun: Ordered StepResults plus timing; ``mark_complete()``
        derives the outcome.
    ServiceState: One row of ``docker compose ps``.
    ProbeStatus / ProbeResult: Four-way HTTP reachability classification.

Architecture Decisions:
    - StepResult is frozen: once recorded it is never edited.
    - ``output`` is truncated (tail kept) so a chatty ``docker compose
      pull`` cannot bloat reports; full output belongs in logs.
    - ``mark_complete()`` pattern: the engine calls it once when the run
      stops; it computes duration and outcome.

Related Modules:
    - :mod:`sol_deploy.deploy.pipeline` — Produces PipelineRun/StepResult
    - :mod:`sol_deploy.deploy.health` — Produces ProbeResult
    - :mod:`sol_deploy.deploy.reporting` — Writes them to disk

Tags:
    results, models, pydantic, pipeline, status, reporting
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

try:
    from pydantic import BaseModel, ConfigDict, Field, field_validator
except ImportError as _exc:
    raise ImportError(
        "sol_deploy.deploy.results requires pydantic. Install it with: pip install pydantic"
    ) from _exc

from sol_deploy.core.errors import ErrorKind, ExitCode, exit_code_for

#: Maximum characters of captured output kept on a StepResult.
MAX_OUTPUT_CHARS = 4000


def truncate_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Keep the last *limit* characters; errors are usually at the end."""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"[... {dropped} characters truncated ...]\n{text[-limit:]}"


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


class RunOutcome(str, Enum):
    """Overall outcome of a pipeline run."""

    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FATAL_FAILURE = "FATAL_FAILURE"
    CANCELLED = "CANCELLED"
    RUNNING = "RUNNING"


class StepResult(BaseModel):
    """Immutable record of one executed step."""

    model_config = ConfigDict(frozen=True)

    step_name: str
    success: bool
    fatal: bool = True
    duration_ms: float = 0.0
    output: str = ""
    error_kind: ErrorKind | None = None
    message: str = ""
    errors: tuple[str, ...] = ()
    remediation: str | None = None
    stderr: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)

    @field_validator("output", "stderr")
    @classmethod
    def _truncate(cls, value: str) -> str:
        return truncate_output(value)


class PipelineRun(BaseModel):
    """One execution of an ordered list of steps."""

    run_id: str = Field(default_factory=_new_run_id)
    pipeline: str = "pipeline"
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_ms: float = 0.0
    total_steps: int = 0
    step_results: list[StepResult] = Field(default_factory=list)
    outcome: RunOutcome = RunOutcome.RUNNING

    def record(self, result: StepResult) -> None:
        self.step_results.append(result)

    def result_for(self, step_name: str) -> StepResult | None:
        for result in self.step_results:
            if result.step_name == step_name:
                return result
        return None

    @property
    def failed_steps(self) -> list[StepResult]:
        return [r for r in self.step_results if not r.success]

    @property
    def fatal_failure(self) -> StepResult | None:
        for result in self.step_results:
            if not result.success and result.fatal:
                return result
        return None

    def mark_complete(self, cancelled: bool = False) -> None:
        """Finalise timestamps and derive the outcome."""
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_ms = (end - start).total_seconds() * 1000

        if cancelled:
            self.outcome = RunOutcome.CANCELLED
        elif self.fatal_failure is not None:
            self.outcome = RunOutcome.FATAL_FAILURE
        elif self.failed_steps:
            self.outcome = RunOutcome.PARTIAL_FAILURE
        else:
            self.outcome = RunOutcome.SUCCESS

    @property
    def exit_code(self) -> ExitCode:
        """Process exit code for this run."""
        if self.outcome == RunOutcome.SUCCESS:
            return ExitCode.SUCCESS
        if self.outcome == RunOutcome.CANCELLED:
            return ExitCode.INTERRUPTED
        if self.outcome == RunOutcome.PARTIAL_FAILURE:
            return ExitCode.PARTIAL_FAILURE
        failure = self.fatal_failure
        if failure is None:
            return ExitCode.INTERNAL_ERROR
        return exit_code_for(failure.error_kind or ErrorKind.INTERNAL)

    @property
    def summary(self) -> str:
        passed = sum(1 for r in self.step_results if r.success)
        return f"{passed}/{self.total_steps or len(self.step_results)} steps succeeded"


# ---------------------------------------------------------------------------
# Service / probe results
# ---------------------------------------------------------------------------


class ServiceState(BaseModel):
    """One service as reported by ``docker compose ps``."""

    name: str
    container_name: str | None = None
    image: str | None = None
    state: str = "unknown"
    health: str | None = None
    status_text: str | None = None
    ports: list[str] = Field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.state == "running"


class ProbeStatus(str, Enum):
    """Four-way HTTP reachability classification."""

    REACHABLE = "REACHABLE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    UNHEALTHY = "UNHEALTHY"
    UNREACHABLE = "UNREACHABLE"

    @property
    def is_up(self) -> bool:
        return self in (ProbeStatus.REACHABLE, ProbeStatus.UNAUTHENTICATED)


class ProbeResult(BaseModel):
    """Outcome of probing one (name, URL) target."""

    name: str
    url: str
    status: ProbeStatus
    http_status: int | None = None
    latency_ms: float | None = None
    error: str | None = None

    @property
    def is_up(self) -> bool:
        return self.status.is_up
