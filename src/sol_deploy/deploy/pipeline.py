"""Pipeline engine for sol-deploy.

Runs an ordered list of named steps, records one :class:`StepResult` per
executed step, and decides from each step's ``fatal`` flag whether a
failure stops the run.

Why This Matters — Homelab Operations:
    ``make deploy`` used to be a bash script with ``set -e`` in some
    places and ``|| true`` in others. Whether a failed image pull aborted
    the deploy depended on which function it happened in. Here every
    step declares it: ``pull-images`` is non-fatal (cached images are
    fine), ``start-containers`` is fatal.

Key Concepts:
    Step: ``name`` + ``action`` + ``fatal``. Names are unique per pipeline.
    StepContext: What an action receives: the run so far, a shared state
        dict for handing data to later steps, and the cancellation flag.
    StepOutcome: What a successful action may return (message, output,
        detail). Failure is signalled by raising a SolDeployError.
    PipelineEngine: ``execute(steps, name)`` → PipelineRun.

Execution rules:
    - Steps run in order, each at most once, never retried by the engine.
    - Fatal failure: record it, stop, outcome FATAL_FAILURE.
    - Non-fatal failure: record it, continue; outcome PARTIAL_FAILURE.
    - Cancellation (``cancel()`` from another thread, or Ctrl-C inside a
      step): the interrupted step is recorded as failed with kind
      CANCELLED and the outcome is CANCELLED, never SUCCESS.
    - Unexpected exceptions are recorded as INTERNAL failures; the engine
      itself does not raise for a failing step.

Related Modules:
    - :mod:`sol_deploy.deploy.results` — StepResult, PipelineRun
    - :mod:`sol_deploy.deploy.pipelines` — The concrete pipelines

Tags:
    pipeline, steps, orchestration, cancellation, fatal, idempotent
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sol_deploy.core.errors import ErrorKind, ExternalCommandError, SolDeployError
from sol_deploy.deploy.results import PipelineRun, StepResult
from sol_deploy.logging import TimingResult, get_logger, push_context

logger = get_logger(__name__)


@dataclass
class StepOutcome:
    """Successful result of a step action."""

    message: str = ""
    output: str = ""
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepContext:
    """Everything a step action can see."""

    run: PipelineRun
    step: Step
    state: dict[str, Any]
    cancel_event: threading.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


StepAction = Callable[[StepContext], "StepOutcome | None"]


@dataclass(frozen=True)
class Step:
    """A named, idempotent unit of pipeline work."""

    name: str
    action: StepAction
    fatal: bool = True
    description: str = ""


class PipelineEngine:
    """Executes steps in order and produces a PipelineRun.

    Parameters
    ----------
    cancel_event:
        Shared flag; setting it stops the run before the next step.
    """

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self._cancel = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next step boundary."""
        self._cancel.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @staticmethod
    def _check_names(steps: Sequence[Step]) -> None:
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name in pipeline: {step.name!r}")
            seen.add(step.name)

    def execute(
        self,
        steps: Sequence[Step],
        name: str = "pipeline",
        state: dict[str, Any] | None = None,
    ) -> PipelineRun:
        """Run *steps* in order and return the finished run.

        Raises
        ------
        ValueError
            If two steps share a name.
        """
        self._check_names(steps)
        run = PipelineRun(pipeline=name, total_steps=len(steps))
        shared = state if state is not None else {}
        cancelled = False

        token = push_context(run_id=run.run_id, pipeline=name)
        try:
            logger.info("pipeline.start", steps=[s.name for s in steps])
            for step in steps:
                if self._cancel.is_set():
                    cancelled = True
                    logger.warning("pipeline.cancelled", before_step=step.name)
                    break

                result = self._run_step(step, StepContext(run, step, shared, self._cancel))
                run.record(result)

                if result.error_kind == ErrorKind.CANCELLED:
                    cancelled = True
                    break
                if not result.success and step.fatal:
                    logger.error("pipeline.halted", step=step.name, error_kind=result.error_kind)
                    break

            run.mark_complete(cancelled=cancelled)
            logger.info(
                "pipeline.end",
                outcome=run.outcome.value,
                duration_ms=round(run.duration_ms, 1),
                summary=run.summary,
            )
        finally:
            token.restore()
        return run

    def _run_step(self, step: Step, ctx: StepContext) -> StepResult:
        token = push_context(step=step.name)
        timer = TimingResult(step=step.name)
        try:
            logger.debug("step.start", fatal=step.fatal)
            try:
                outcome = step.action(ctx) or StepOutcome()
            except KeyboardInterrupt:
                self._cancel.set()
                logger.warning("step.interrupted")
                return StepResult(
                    step_name=step.name,
                    success=False,
                    fatal=step.fatal,
                    duration_ms=timer.stop().duration_ms,
                    error_kind=ErrorKind.CANCELLED,
                    message="Interrupted by operator",
                )
            except SolDeployError as exc:
                output = ""
                if isinstance(exc, ExternalCommandError) and exc.result is not None:
                    output = exc.result.stdout
                log = logger.error if step.fatal else logger.warning
                log("step.failed", error_kind=exc.kind.value, error=exc.message, problems=exc.problems)
                if exc.kind == ErrorKind.CANCELLED:
                    self._cancel.set()
                return StepResult(
                    step_name=step.name,
                    success=False,
                    fatal=step.fatal,
                    duration_ms=timer.stop().duration_ms,
                    output=output,
                    error_kind=exc.kind,
                    message=exc.message,
                    errors=tuple(exc.problems),
                    remediation=exc.remediation,
                    stderr=exc.stderr,
                    detail=exc.context.to_dict(),
                )
            except Exception as exc:
                logger.exception("step.crashed", error=str(exc))
                return StepResult(
                    step_name=step.name,
                    success=False,
                    fatal=step.fatal,
                    duration_ms=timer.stop().duration_ms,
                    error_kind=ErrorKind.INTERNAL,
                    message=f"{type(exc).__name__}: {exc}",
                )

            logger.info("step.completed", duration_ms=round(timer.duration_ms, 1), message=outcome.message)
            return StepResult(
                step_name=step.name,
                success=True,
                fatal=step.fatal,
                duration_ms=timer.stop().duration_ms,
                output=outcome.output,
                message=outcome.message,
                detail=outcome.detail,
            )
        finally:
            token.restore()
