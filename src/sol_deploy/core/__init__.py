"""Core primitives shared by every sol-deploy component: errors and settings."""

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
from sol_deploy.core.settings import DeploySettings, clear_settings_cache, find_project_root, get_settings

__all__ = [
    "ConfigError",
    "ConflictError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorKind",
    "ExitCode",
    "ExternalCommandError",
    "PipelineCancelled",
    "ProbeError",
    "SolDeployError",
    "exit_code_for",
    "DeploySettings",
    "clear_settings_cache",
    "find_project_root",
    "get_settings",
]
