"""Tests for sol_deploy.core.errors."""

import pytest

from sol_deploy.core.errors import (
    ConfigError,
    ConflictError,
    ErrorCategory,
    ErrorContext,
    ErrorKind,
    ExitCode,
    ExternalCommandError,
    PipelineCancelled,
    ProbeError,
    SolDeployError,
    exit_code_for,
)
from sol_deploy.deploy.runner import CommandResult


class TestErrorContext:
    def test_to_dict_includes_only_set_fields(self):
        ctx = ErrorContext(path="/srv/docker/.env", metadata={"key": "N8N_PASSWORD"})
        assert ctx.to_dict() == {"path": "/srv/docker/.env", "key": "N8N_PASSWORD"}

    def test_empty_context(self):
        assert ErrorContext().to_dict() == {}


class TestCategories:
    @pytest.mark.parametrize(
        ("cls", "category", "kind"),
        [
            (ConfigError, ErrorCategory.CONFIG, ErrorKind.INVALID_CONFIG),
            (ExternalCommandError, ErrorCategory.EXTERNAL_COMMAND, ErrorKind.NON_ZERO_EXIT),
            (ConflictError, ErrorCategory.CONFLICT, ErrorKind.PORT_COLLISION),
            (ProbeError, ErrorCategory.PROBE, ErrorKind.UNREACHABLE),
            (PipelineCancelled, ErrorCategory.CANCELLED, ErrorKind.CANCELLED),
        ],
    )
    def test_defaults(self, cls, category, kind):
        err = cls("boom")
        assert isinstance(err, SolDeployError)
        assert err.category == category
        assert err.kind == kind

    def test_explicit_kind_overrides_default(self):
        err = ConfigError("no template", kind=ErrorKind.MISSING_TEMPLATE)
        assert err.kind == ErrorKind.MISSING_TEMPLATE
        assert err.category == ErrorCategory.CONFIG


class TestSolDeployError:
    def test_problems_are_copied(self):
        problems = ["A: missing"]
        err = ConfigError("bad", problems=problems)
        problems.append("B: missing")
        assert err.problems == ["A: missing"]

    def test_with_context_sets_known_and_extra_fields(self):
        err = ConfigError("bad").with_context(path="/x", key="TZ")
        assert err.context.path == "/x"
        assert err.context.metadata == {"key": "TZ"}

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        err = SolDeployError("wrapped", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "disk full"

    def test_to_dict(self):
        err = ConfigError(
            "2 environment problem(s)",
            kind=ErrorKind.PLACEHOLDER_VALUE_REMAINS,
            problems=["N8N_PASSWORD: placeholder", "TZ: missing"],
            remediation="Edit docker/.env",
        )
        data = err.to_dict()
        assert data["error_type"] == "ConfigError"
        assert data["kind"] == "PLACEHOLDER_VALUE_REMAINS"
        assert data["category"] == "CONFIG"
        assert data["problems"] == ["N8N_PASSWORD: placeholder", "TZ: missing"]
        assert data["remediation"] == "Edit docker/.env"
        assert data["retryable"] is False

    def test_repr(self):
        assert repr(ConfigError("x")) == "ConfigError('x', kind=INVALID_CONFIG)"


class TestExternalCommandError:
    def test_carries_result_stderr_and_command(self):
        result = CommandResult("docker", ("compose", "up", "-d"), exit_code=1, stderr="port is already allocated")
        err = ExternalCommandError("up failed", result=result)
        assert err.stderr == "port is already allocated"
        assert err.context.command == "docker compose up -d"
        data = err.to_dict()
        assert data["exit_code"] == 1
        assert data["timed_out"] is False

    def test_without_result(self):
        assert ExternalCommandError("missing", kind=ErrorKind.EXECUTABLE_NOT_FOUND).stderr == ""


class TestRetryable:
    @pytest.mark.parametrize(
        "error, retryable",
        [
            (ConfigError("bad"), False),
            (ConflictError("ports"), False),
            (PipelineCancelled("stop"), False),
            (ProbeError("down"), True),
            (ExternalCommandError("slow", kind=ErrorKind.TIMED_OUT), True),
            (ExternalCommandError("failed", kind=ErrorKind.NON_ZERO_EXIT), False),
            (ExternalCommandError("missing", kind=ErrorKind.EXECUTABLE_NOT_FOUND), False),
        ],
    )
    def test_defaults(self, error, retryable):
        assert error.retryable is retryable

    def test_explicit_flag_wins(self):
        assert ConfigError("locked", retryable=True).retryable is True
        assert ExternalCommandError("slow", kind=ErrorKind.TIMED_OUT, retryable=False).retryable is False

    def test_timed_out_command_result(self):
        result = CommandResult("docker", ("compose", "pull"), exit_code=-1, timed_out=True)
        with pytest.raises(ExternalCommandError) as exc_info:
            result.check("pull took too long")
        assert exc_info.value.retryable is True
        assert exc_info.value.to_dict()["retryable"] is True


class TestExitCodes:
    @pytest.mark.parametrize(
        ("kind", "code"),
        [
            (None, ExitCode.SUCCESS),
            (ErrorKind.MISSING_TEMPLATE, ExitCode.CONFIG_ERROR),
            (ErrorKind.ID_MISMATCH, ExitCode.CONFIG_ERROR),
            (ErrorKind.PORT_COLLISION, ExitCode.CONFLICT),
            (ErrorKind.HOST_PORT_IN_USE, ExitCode.CONFLICT),
            (ErrorKind.NON_ZERO_EXIT, ExitCode.COMMAND_FAILED),
            (ErrorKind.TIMED_OUT, ExitCode.COMMAND_TIMED_OUT),
            (ErrorKind.EXECUTABLE_NOT_FOUND, ExitCode.EXECUTABLE_NOT_FOUND),
            (ErrorKind.UNREACHABLE, ExitCode.PARTIAL_FAILURE),
            (ErrorKind.CANCELLED, ExitCode.INTERRUPTED),
            (ErrorKind.INTERNAL, ExitCode.INTERNAL_ERROR),
        ],
    )
    def test_exit_code_for(self, kind, code):
        assert exit_code_for(kind) == code

    def test_error_exit_code_property(self):
        assert ConflictError("clash").exit_code == 11
        assert ExternalCommandError("t", kind=ErrorKind.TIMED_OUT).exit_code == 21
