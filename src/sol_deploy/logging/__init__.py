"""
sol-deploy logging - structured, run-aware logging.

This module provides:
- Structured logging with structlog
- Run context propagation via contextvars
- Timing helpers for steps and external commands
- Environment-based configuration

Usage:
    from sol_deploy.logging import get_logger, configure_logging, log_step, bind_context

    configure_logging()
    log = get_logger(__name__)

    bind_context(run_id="a1b2c3d4e5f6", pipeline="deploy")

    with log_step("compose.pull"):
        pull_images()
"""

from sol_deploy.logging.config import configure_logging, is_configured
from sol_deploy.logging.context import (
    LogContext,
    bind_context,
    clear_context,
    get_context,
    get_logger,
    push_context,
    set_context,
)
from sol_deploy.logging.timing import TimingResult, log_step, timed_block

__all__ = [
    "configure_logging",
    "is_configured",
    "LogContext",
    "bind_context",
    "clear_context",
    "get_context",
    "get_logger",
    "push_context",
    "set_context",
    "TimingResult",
    "log_step",
    "timed_block",
]
