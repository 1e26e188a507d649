"""Wires settings into the deploy components.

One :class:`Workspace` per CLI invocation: it owns the command runner and
hands the same runner, paths and timeouts to every component, so nothing
below the CLI reads the process working directory or environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import httpx

from sol_deploy.core.settings import DeploySettings
from sol_deploy.deploy.backup import BackupManager
from sol_deploy.deploy.compose import ComposeClient
from sol_deploy.deploy.environment import EnvironmentResolver
from sol_deploy.deploy.health import HealthChecker
from sol_deploy.deploy.interaction import AssumeYesOperator, Operator
from sol_deploy.deploy.rollback import GitRepository
from sol_deploy.deploy.runner import CommandRunner
from sol_deploy.deploy.tunnel import TunnelCli, TunnelConfigurator


@dataclass
class Workspace:
    """The homelab project at ``settings.project_root`` and its tools."""

    settings: DeploySettings
    runner: CommandRunner
    operator: Operator = field(default_factory=AssumeYesOperator)
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(
        cls,
        settings: DeploySettings,
        operator: Operator | None = None,
        runner: CommandRunner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Workspace:
        runner = runner or CommandRunner(cwd=settings.project_root, default_timeout=settings.command_timeout_seconds)
        return cls(settings, runner, operator or AssumeYesOperator(), transport)

    @property
    def root(self) -> Path:
        return self.settings.project_root

    def compose(self) -> ComposeClient:
        return ComposeClient(
            self.runner,
            self.settings.docker_path,
            self.settings.compose_files,
            timeout=self.settings.command_timeout_seconds,
            pull_timeout=self.settings.pull_timeout_seconds,
        )

    def resolver(self) -> EnvironmentResolver:
        return EnvironmentResolver(self.settings.password_length, self.settings.generated_keys)

    def tunnel(self) -> TunnelConfigurator:
        cli = TunnelCli(self.runner, self.settings.credentials_path, self.settings.cloudflared_image)
        return TunnelConfigurator(
            self.settings.tunnel_config_path,
            self.settings.tunnel_compose_path,
            self.settings.credentials_path,
            cli=cli,
            name_prefix=self.settings.tunnel_name_prefix,
            tunnel_service=self.settings.tunnel_service,
        )

    def health(self, verify_tls: bool = True) -> HealthChecker:
        return HealthChecker(
            timeout_ms=self.settings.probe_timeout_ms,
            max_concurrency=self.settings.probe_concurrency,
            transport=self.transport,
            verify_tls=verify_tls,
        )

    def git(self) -> GitRepository:
        return GitRepository(self.runner, self.root)

    def backups(self) -> BackupManager:
        return BackupManager(
            self.runner,
            self.root,
            self.settings.backup_path,
            self.settings.backup_password_path,
            retention_days=self.settings.backup_retention_days,
        )
