"""
Structured error types for sol-deploy.

Every failure the orchestrator can report is a :class:`SolDeployError`
subclass carrying an :class:`ErrorKind` (the precise diagnosis), an
:class:`ErrorCategory` (the family, which drives exit codes), a suggested
remediation string, structured context, and an optional chained cause.

Why This Matters — Homelab Operations:
    "Deploy failed" is useless at 2am. The operator needs to know whether
    the ``.env`` still holds a placeholder password, whether two services
    both want port 3000, or whether ``docker compose pull`` simply timed
    out. Each of those is a different kind with a different fix, and the
    calling automation (cron, Makefile) needs a different exit code for
    "bad configuration" than for "external tool failed".

Key Concepts:
    ErrorCategory: Family of an error — CONFIG, CONFLICT, EXTERNAL_COMMAND,
        PROBE, CANCELLED, INTERNAL.
    ErrorKind: Precise diagnosis inside a family (MISSING_TEMPLATE,
        ID_MISMATCH, NON_ZERO_EXIT, PORT_COLLISION, ...).
    ExitCode: Process exit codes, one range per category.
    ConfigError: Configuration problems; carries the complete problem list.
    ExternalCommandError: A wrapped CLI failed; carries the CommandResult.
    ConflictError: Port collisions found before deployment.
    ProbeError: Health probe failures; informational only.

Architecture Decisions:
    - Kind and category are separate: steps and reports care about the
      kind, exit codes and fatality rules care about the category.
    - Validation-class errors (config, conflict) carry *all* problems so
      the operator sees everything in one pass.
    - ``ProbeError`` is never fatal; the pipeline engine treats it like any
      other failure of a non-fatal step.

Related Modules:
    - :mod:`sol_deploy.deploy.pipeline` — Records kinds into StepResults
    - :mod:`sol_deploy.deploy.runner` — Raises ExternalCommandError
    - :mod:`sol_deploy.cli.utils` — Maps errors to exit codes

Tags:
    error-handling, exception-hierarchy, exit-codes, remediation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sol_deploy.deploy.runner import CommandResult


class ErrorCategory(str, Enum):
    """Error family; determines fatality rules and the exit-code range."""

    CONFIG = "CONFIG"
    CONFLICT = "CONFLICT"
    EXTERNAL_COMMAND = "EXTERNAL_COMMAND"
    PROBE = "PROBE"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


class ErrorKind(str, Enum):
    """Precise failure diagnosis recorded on a StepResult."""

    # ConfigError
    MISSING_TEMPLATE = "MISSING_TEMPLATE"
    MISSING_REQUIRED_KEY = "MISSING_REQUIRED_KEY"
    PLACEHOLDER_VALUE_REMAINS = "PLACEHOLDER_VALUE_REMAINS"
    ID_MISMATCH = "ID_MISMATCH"
    ID_MISSING = "ID_MISSING"
    CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
    CREDENTIALS_UNREADABLE = "CREDENTIALS_UNREADABLE"
    INVALID_CONFIG = "INVALID_CONFIG"

    # ExternalCommandError
    NON_ZERO_EXIT = "NON_ZERO_EXIT"
    TIMED_OUT = "TIMED_OUT"
    EXECUTABLE_NOT_FOUND = "EXECUTABLE_NOT_FOUND"

    # ConflictError
    PORT_COLLISION = "PORT_COLLISION"
    HOST_PORT_IN_USE = "HOST_PORT_IN_USE"

    # ProbeError
    UNREACHABLE = "UNREACHABLE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    SERVER_ERROR = "SERVER_ERROR"

    # Engine
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


class ExitCode(IntEnum):
    """Process exit codes returned by every CLI command."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    CONFIG_ERROR = 10
    CONFLICT = 11
    COMMAND_FAILED = 20
    COMMAND_TIMED_OUT = 21
    EXECUTABLE_NOT_FOUND = 22
    INTERNAL_ERROR = 70
    INTERRUPTED = 130


_KIND_EXIT_CODES: dict[ErrorKind, ExitCode] = {
    ErrorKind.NON_ZERO_EXIT: ExitCode.COMMAND_FAILED,
    ErrorKind.TIMED_OUT: ExitCode.COMMAND_TIMED_OUT,
    ErrorKind.EXECUTABLE_NOT_FOUND: ExitCode.EXECUTABLE_NOT_FOUND,
    ErrorKind.PORT_COLLISION: ExitCode.CONFLICT,
    ErrorKind.HOST_PORT_IN_USE: ExitCode.CONFLICT,
    ErrorKind.CANCELLED: ExitCode.INTERRUPTED,
    ErrorKind.INTERNAL: ExitCode.INTERNAL_ERROR,
}


def exit_code_for(kind: ErrorKind | None) -> ExitCode:
    """Map an error kind to the exit code of a fatal failure."""
    if kind is None:
        return ExitCode.SUCCESS
    if kind in _KIND_EXIT_CODES:
        return _KIND_EXIT_CODES[kind]
    if kind in (ErrorKind.UNREACHABLE, ErrorKind.UNAUTHENTICATED, ErrorKind.SERVER_ERROR):
        return ExitCode.PARTIAL_FAILURE
    return ExitCode.CONFIG_ERROR


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    step: str | None = None
    path: str | None = None
    service: str | None = None
    command: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("step", "path", "service", "command"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SolDeployError(Exception):
    """
    Base exception for all sol-deploy errors.

    Subclasses set ``default_category``, ``default_kind`` and
    ``default_retryable``. Raising a subclass from a step action is how the
    action reports failure; the pipeline engine reads ``kind``,
    ``problems``, ``remediation`` and ``stderr`` into the StepResult.

    ``retryable`` tells the operator (or the calling automation) whether
    running the same command again may succeed. The engine itself never
    retries a step.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_kind: ErrorKind = ErrorKind.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        problems: list[str] | None = None,
        remediation: str | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.category = self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.problems = list(problems or [])
        self.remediation = remediation
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def stderr(self) -> str:
        """Captured stderr of the failing external command, if any."""
        return ""

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for(self.kind)

    def with_context(self, **kwargs: Any) -> SolDeployError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConfigError("bad value").with_context(path=str(env_file))
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "kind": self.kind.value,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.problems:
            result["problems"] = list(self.problems)
        if self.remediation:
            result["remediation"] = self.remediation
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(SolDeployError):
    """
    Configuration error.

    Always fatal to the step that detects it and never auto-corrected.
    ``problems`` holds every issue found, not just the first.
    """

    default_category = ErrorCategory.CONFIG
    default_kind = ErrorKind.INVALID_CONFIG


# =============================================================================
# EXTERNAL COMMAND ERRORS
# =============================================================================


class ExternalCommandError(SolDeployError):
    """An external CLI (docker, cloudflared, git, openssl) failed."""

    default_category = ErrorCategory.EXTERNAL_COMMAND
    default_kind = ErrorKind.NON_ZERO_EXIT

    def __init__(
        self,
        message: str,
        *,
        result: CommandResult | None = None,
        **kwargs: Any,
    ):
        # A timeout may clear on its own; a missing binary or a failing exit will not.
        if kwargs.get("retryable") is None:
            kwargs["retryable"] = kwargs.get("kind") == ErrorKind.TIMED_OUT
        super().__init__(message, **kwargs)
        self.result = result
        if result is not None and self.context.command is None:
            self.context.command = result.command_line

    @property
    def stderr(self) -> str:
        if self.result is None:
            return ""
        return self.result.stderr

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.result is not None:
            result["exit_code"] = self.result.exit_code
            result["timed_out"] = self.result.timed_out
        return result


# =============================================================================
# CONFLICT ERRORS
# =============================================================================


class ConflictError(SolDeployError):
    """
    Port collision detected before deployment.

    Never raised once containers are running; the check only runs ahead of
    ``docker compose up``.
    """

    default_category = ErrorCategory.CONFLICT
    default_kind = ErrorKind.PORT_COLLISION

    def __init__(self, message: str, *, conflicts: list[Any] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.conflicts = list(conflicts or [])


# =============================================================================
# PROBE ERRORS
# =============================================================================


class ProbeError(SolDeployError):
    """Health probe failure. Informational only, never fatal."""

    default_category = ErrorCategory.PROBE
    default_kind = ErrorKind.UNREACHABLE
    default_retryable = True


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class PipelineCancelled(SolDeployError):
    """The operator interrupted a pipeline run."""

    default_category = ErrorCategory.CANCELLED
    default_kind = ErrorKind.CANCELLED
