"""sol-deploy deploy layer: pipelines over docker compose and cloudflared.

Runs the homelab's operational tasks (deploy, validate, backup,
rollback) as ordered pipelines of named steps against two external CLIs:
``docker compose`` and ``cloudflared`` (in a throwaway container). Every
step is recorded with its outcome, and fatal failures stop the run.

Key Concepts:
    CommandRunner: subprocess wrapper returning CommandResult.
    EnvironmentResolver: Template + existing ``.env`` → resolved config.
    check_conflicts(): Host port collisions before ``docker compose up``.
    TunnelConfigurator: Tunnel id consistency, credentials, DNS routes.
    PipelineEngine: Ordered steps → PipelineRun.
    HealthChecker: Concurrent HTTP probes with four-way classification.
    Workspace: Settings wired into all of the above.

Architecture::

    ┌───────────────────────────────────────────────────────────────┐
    │                       sol-deploy CLI                          │
    ├───────────────────────────────────────────────────────────────┤
    │  pipelines: deploy │ validate │ backup │ rollback             │
    ├────────────┬─────────────┬────────────┬───────────┬───────────┤
    │ Environment│ Ports       │ Tunnel     │ Health    │ Backup /  │
    │ Resolver   │ Checker     │ Configurator│ Checker  │ Git       │
    ├────────────┴─────────────┴────────────┴───────────┴───────────┤
    │        CommandRunner (docker, cloudflared, git, openssl)      │
    └───────────────────────────────────────────────────────────────┘

Tags:
    deploy, docker, compose, cloudflare, tunnel, pipeline, homelab
"""

from sol_deploy.deploy.compose import ComposeClient
from sol_deploy.deploy.environment import EnvironmentConfig, EnvironmentResolver, generate_password
from sol_deploy.deploy.health import HealthChecker, ProbeTarget
from sol_deploy.deploy.pipeline import PipelineEngine, Step, StepContext, StepOutcome
from sol_deploy.deploy.ports import Conflict, ServicePort, check_conflicts
from sol_deploy.deploy.results import (
    PipelineRun,
    ProbeResult,
    ProbeStatus,
    RunOutcome,
    ServiceState,
    StepResult,
)
from sol_deploy.deploy.runner import CommandResult, CommandRunner
from sol_deploy.deploy.tunnel import (
    RouteResult,
    RouteStatus,
    TunnelConfig,
    TunnelConfigurator,
    TunnelState,
    ensure_consistent_id,
)
from sol_deploy.deploy.workspace import Workspace

__all__ = [
    # Runner
    "CommandResult",
    "CommandRunner",
    # Environment
    "EnvironmentConfig",
    "EnvironmentResolver",
    "generate_password",
    # Ports
    "Conflict",
    "ServicePort",
    "check_conflicts",
    # Tunnel
    "RouteResult",
    "RouteStatus",
    "TunnelConfig",
    "TunnelConfigurator",
    "TunnelState",
    "ensure_consistent_id",
    # Pipeline
    "PipelineEngine",
    "PipelineRun",
    "RunOutcome",
    "Step",
    "StepContext",
    "StepOutcome",
    "StepResult",
    # Compose / health
    "ComposeClient",
    "HealthChecker",
    "ProbeResult",
    "ProbeStatus",
    "ProbeTarget",
    "ServiceState",
    # Wiring
    "Workspace",
]
