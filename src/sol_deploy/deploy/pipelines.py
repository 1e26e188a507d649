"""The concrete sol-deploy pipelines: deploy, validate, backup, rollback.

Each pipeline is a fixed, ordered list of :class:`Step` objects built from
a :class:`Workspace`. Step actions are methods of :class:`HomelabSteps` so
they share the workspace components and hand data to later steps through
``ctx.state`` (the resolved environment, the compose model, the archive
path).

Why This Matters — Homelab Operations:
    The order and fatality of the steps *is* the deployment policy. It is
    written down in one place instead of being spread over four shell
    scripts:

    ======================== =========== ==================================
    deploy step              fatal       notes
    ======================== =========== ==================================
    resolve-environment      yes         writes docker/.env (0600)
    validate-environment     yes         every problem listed at once
    validate-compose-syntax  yes         ``docker compose config``
    check-port-conflicts     yes         compose collisions + busy host ports
    prepare-directories      yes         bind-mount dirs under docker/
    pull-images              no          cached images are fine
    start-containers         yes         ``up -d``; reports already_running
    reconfigure-tunnel-...   no          restart cloudflared, read its logs
    health-check-all         no          HTTP probes of local web UIs
    ======================== =========== ==================================

Idempotency:
    Every action converges on the same end state when re-run: the
    environment keeps existing values, ``up -d`` leaves running
    containers alone, and route registration treats "already exists" as
    success. Running ``deploy`` twice yields SUCCESS both times.

Related Modules:
    - :mod:`sol_deploy.deploy.pipeline` — The engine
    - :mod:`sol_deploy.deploy.workspace` — Component wiring
    - :mod:`sol_deploy.cli.commands` — ``sol-deploy deploy``

Tags:
    pipeline, deploy, validate, backup, rollback, idempotent
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any

from sol_deploy.core.errors import (
    ConfigError,
    ConflictError,
    ErrorKind,
    ExternalCommandError,
    ProbeError,
)
from sol_deploy.deploy import layout, preflight, security
from sol_deploy.deploy.compose import ComposeClient
from sol_deploy.deploy.environment import EnvironmentConfig
from sol_deploy.deploy.health import raise_for_probes, targets_from_ports
from sol_deploy.deploy.pipeline import PipelineEngine, Step, StepContext, StepOutcome
from sol_deploy.deploy.ports import DNS_REMEDIATION, check_conflicts, find_busy_ports, ports_from_compose
from sol_deploy.deploy.results import PipelineRun
from sol_deploy.deploy.tunnel import credentials_path
from sol_deploy.deploy.workspace import Workspace
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

TUNNEL_READY_RE = re.compile(r"Registered tunnel connection|route propagating|tunnel running", re.IGNORECASE)
DNS_BIND_RE = re.compile(
    r":53\b.*address already in use|bind for \S*:53 failed",
    re.IGNORECASE,
)
DNS_SERVICE = "adguardhome"


def logging_plugin_missing(text: str, alias: str) -> bool:
    """True for the daemon error of a service whose logging plugin is absent.

    ``error looking up logging plugin loki: plugin "loki" not found`` or
    ``loki plugin not found``
    """
    name = re.escape(alias)
    pattern = rf'plugin "?{name}"? not found|{name} plugin not found'
    return re.search(pattern, text, re.IGNORECASE) is not None


class HomelabSteps:
    """Step actions bound to one workspace.

    Parameters
    ----------
    workspace:
        Settings, runner and operator for this invocation.
    tunnel_poll_attempts / tunnel_poll_interval:
        How long to wait for cloudflared to report a connection after a
        restart.
    """

    def __init__(
        self,
        workspace: Workspace,
        *,
        tunnel_poll_attempts: int = 6,
        tunnel_poll_interval: float = 5.0,
    ) -> None:
        self.ws = workspace
        self.settings = workspace.settings
        self.compose: ComposeClient = workspace.compose()
        self.resolver = workspace.resolver()
        self.tunnel = workspace.tunnel()
        self.tunnel_poll_attempts = max(1, tunnel_poll_attempts)
        self.tunnel_poll_interval = tunnel_poll_interval

    # ── Environment ──────────────────────────────────────────────

    def resolve_environment(self, ctx: StepContext) -> StepOutcome:
        settings = self.settings
        config = self.resolver.resolve(settings.env_template_path, settings.env_path)
        ctx.state["env"] = config

        current: dict[str, str] = {}
        if settings.env_path.is_file():
            current = self.resolver.load(settings.env_path).as_dict()
        if current == config.as_dict():
            return StepOutcome(f"{settings.env_file} is up to date", detail={"changed": False})

        self.resolver.write(config, settings.env_template_path, settings.env_path)
        return StepOutcome(
            f"wrote {settings.env_file}",
            detail={"changed": True, "generated": list(config.generated)},
        )

    def _environment(self, ctx: StepContext) -> EnvironmentConfig:
        config = ctx.state.get("env")
        if config is not None:
            return config
        path = self.settings.env_path
        if not path.is_file():
            raise ConfigError(
                f"Environment file not found: {path}",
                kind=ErrorKind.MISSING_REQUIRED_KEY,
                remediation="Create it with: sol-deploy env init",
            ).with_context(path=str(path))
        config = self.resolver.load(path, self.settings.env_template_path)
        ctx.state["env"] = config
        return config

    def validate_environment(self, ctx: StepContext) -> StepOutcome:
        config = self._environment(ctx)
        result = self.resolver.validate(config, self.settings.required_env_keys)
        result.raise_for_problems(self.settings.env_path)
        return StepOutcome(
            f"{len(self.settings.required_env_keys)} required keys set",
            detail={"warnings": result.warnings} if result.warnings else {},
        )

    # ── Compose ──────────────────────────────────────────────────

    def _compose_model(self, ctx: StepContext) -> dict[str, Any]:
        model = ctx.state.get("compose_model")
        if model is None:
            model = self.compose.config_model()
            ctx.state["compose_model"] = model
        return model

    def validate_compose(self, ctx: StepContext) -> StepOutcome:
        self.compose.validate_config()
        model = self.compose.config_model()
        ctx.state["compose_model"] = model
        services = sorted((model.get("services") or {}).keys())
        return StepOutcome(f"{len(services)} services defined", detail={"services": services})

    def check_ports(self, ctx: StepContext) -> StepOutcome:
        ports = ports_from_compose(self._compose_model(ctx))
        conflicts = check_conflicts(ports)
        if conflicts:
            remediation = "; ".join(dict.fromkeys(c.remediation for c in conflicts))
            raise ConflictError(
                f"{len(conflicts)} host port collision(s)",
                kind=ErrorKind.PORT_COLLISION,
                conflicts=conflicts,
                problems=[c.message for c in conflicts],
                remediation=remediation,
            )

        if self.settings.check_host_ports:
            busy = find_busy_ports(ports, exclude=self.compose.held_ports())
            if busy:
                dns = any(p.host_port == 53 for p in busy)
                raise ConflictError(
                    f"{len(busy)} host port(s) already in use by other processes",
                    kind=ErrorKind.HOST_PORT_IN_USE,
                    problems=[f"{p.host_port}/{p.protocol} needed by {p.service_name} is in use" for p in busy],
                    remediation=DNS_REMEDIATION if dns else "Stop the process holding the port (see: sudo ss -tulpn)",
                )
        return StepOutcome(f"{len(ports)} published ports, no collisions")

    def prepare_directories(self, ctx: StepContext) -> StepOutcome:
        settings = self.settings
        report = layout.prepare_directories(settings.docker_path, settings.data_dirs, settings.open_dirs)
        if not report.changed:
            return StepOutcome(f"{len(settings.data_dirs)} data directories present", detail={"changed": False})
        return StepOutcome(
            f"created {len(report.created)} data director{'y' if len(report.created) == 1 else 'ies'}",
            detail={"changed": True, "created": report.created, "chmodded": report.chmodded},
        )

    def check_logging_driver(self, ctx: StepContext) -> StepOutcome:
        alias = self.settings.logging_plugin
        services = preflight.services_using_driver(self._compose_model(ctx), alias)
        if not services:
            return StepOutcome(f"no service uses the {alias} logging driver", detail={"skipped": True})
        plugin = preflight.check_logging_plugin(self.ws.runner, alias, self.settings.logging_plugin_image)
        return StepOutcome(f"{plugin} installed for {len(services)} service(s)", detail={"services": services})

    def pull_images(self, ctx: StepContext) -> StepOutcome:
        result = self.compose.pull()
        return StepOutcome("images pulled", output=result.output)

    def start_containers(self, ctx: StepContext) -> StepOutcome:
        model = self._compose_model(ctx)
        expected = set((model.get("services") or {}).keys())
        running_before = self.compose.running_services()
        already_running = bool(expected) and expected <= running_before

        try:
            result = self.compose.up()
        except ExternalCommandError as exc:
            if DNS_SERVICE in expected and (
                DNS_BIND_RE.search(exc.stderr) or DNS_BIND_RE.search(self.compose.logs(DNS_SERVICE, tail=50))
            ):
                exc.remediation = DNS_REMEDIATION
                exc.problems.append(f"{DNS_SERVICE} could not bind port 53")
            else:
                alias = self.settings.logging_plugin
                text = exc.result.output if exc.result is not None else ""
                if logging_plugin_missing(text, alias):
                    exc.remediation = preflight.plugin_install_command(alias, self.settings.logging_plugin_image)
                    exc.problems.append(f"docker logging plugin '{alias}' is not installed")
            raise

        message = (
            f"all {len(expected)} services already running"
            if already_running
            else f"started {len(expected - running_before)} of {len(expected)} services"
        )
        return StepOutcome(
            message,
            output=result.output,
            detail={"already_running": already_running, "services": len(expected)},
        )

    # ── Tunnel ───────────────────────────────────────────────────

    def reconfigure_tunnel(self, ctx: StepContext) -> StepOutcome:
        service = self.settings.tunnel_service
        if service not in (self._compose_model(ctx).get("services") or {}):
            return StepOutcome(f"no {service} service defined", detail={"skipped": True})

        tunnel_id = self.tunnel.check()
        # Lines from the previous container run must not count as a connection.
        since = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.compose.restart([service])

        logs = ""
        for attempt in range(self.tunnel_poll_attempts):
            if attempt:
                time.sleep(self.tunnel_poll_interval)
            if ctx.cancelled:
                break
            logs = self.compose.logs(service, tail=20, since=since)
            if TUNNEL_READY_RE.search(logs):
                return StepOutcome(
                    f"tunnel {tunnel_id[:8]} connected",
                    detail={"tunnel_id": tunnel_id, "hostnames": self.tunnel.load_config().hostnames},
                )
        raise ProbeError(
            f"{service} restarted but did not report a tunnel connection",
            kind=ErrorKind.UNREACHABLE,
            problems=[line for line in logs.splitlines()[-5:] if line.strip()],
            remediation=f"Check the logs: sol-deploy services logs {service}",
        )

    def check_tunnel_config(self, ctx: StepContext) -> StepOutcome:
        tunnel_id = self.tunnel.check()
        config = self.tunnel.load_config()
        return StepOutcome(
            f"tunnel {tunnel_id[:8]} consistent, {len(config.ingress_routes)} ingress routes",
            detail={"tunnel_id": tunnel_id},
        )

    # ── Health ───────────────────────────────────────────────────

    def health_check(self, ctx: StepContext) -> StepOutcome:
        defined = set((self._compose_model(ctx).get("services") or {}).keys())
        local = {name: port for name, port in self.settings.local_services.items() if not defined or name in defined}
        results = self.ws.health().probe(targets_from_ports(local))
        ctx.state["probes"] = results
        raise_for_probes(results)
        return StepOutcome(
            f"{len(results)} services responding",
            detail={"probes": [r.model_dump(mode="json") for r in results]},
        )

    # ── Validate-only ────────────────────────────────────────────

    def check_dependencies(self, ctx: StepContext) -> StepOutcome:
        report = preflight.check_all(self.ws.runner)
        return StepOutcome(report.summary, detail=dict(report.versions))

    def check_resources(self, ctx: StepContext) -> StepOutcome:
        settings = self.settings
        report = preflight.check_resources(settings.project_root, settings.min_memory_gb, settings.min_disk_gb)
        message = report.summary
        if report.warnings:
            message += f" ({len(report.warnings)} warning(s))"
        return StepOutcome(
            message,
            detail={"memory_gb": report.memory_gb, "disk_free_gb": report.disk_free_gb, "warnings": report.warnings},
        )

    def check_security(self, ctx: StepContext) -> StepOutcome:
        settings = self.settings
        env = ctx.state.get("env") or {}
        creds = []
        try:
            creds.append(credentials_path(settings.credentials_path, self.tunnel.current_id()))
        except ConfigError:
            pass
        findings = security.scan(
            project_root=settings.project_root,
            env_path=settings.env_path,
            env=env,
            password_keys=settings.generated_keys,
            credentials_files=creds,
            backup_password_path=settings.backup_password_path,
            compose_model=ctx.state.get("compose_model"),
        )
        errors = [f for f in findings if f.severity == security.Severity.ERROR]
        warnings = [str(f) for f in findings if f.severity == security.Severity.WARNING]
        if errors:
            raise ConfigError(
                f"{len(errors)} security problem(s)",
                kind=ErrorKind.INVALID_CONFIG,
                problems=[str(f) for f in errors] + warnings,
                remediation="; ".join(f.remediation for f in errors if f.remediation),
            )
        return StepOutcome(f"{len(warnings)} advisory warning(s)", detail={"warnings": warnings})

    # ── Backup ───────────────────────────────────────────────────

    def create_archive(self, ctx: StepContext) -> StepOutcome:
        archive = ctx.state["backups"].create_archive()
        ctx.state["archive"] = archive
        return StepOutcome(f"created {archive.name}", detail={"path": str(archive)})

    def encrypt_archive(self, ctx: StepContext) -> StepOutcome:
        encrypted = ctx.state["backups"].encrypt(ctx.state["archive"])
        ctx.state["archive"] = encrypted
        return StepOutcome(f"encrypted to {encrypted.name}", detail={"path": str(encrypted)})

    def verify_archive(self, ctx: StepContext) -> StepOutcome:
        ctx.state["backups"].verify(ctx.state["archive"])
        return StepOutcome(f"{ctx.state['archive'].name} verified")

    def upload_archive(self, ctx: StepContext) -> StepOutcome:
        remote = ctx.state["remote"]
        ctx.state["backups"].upload(ctx.state["archive"], remote)
        return StepOutcome(f"uploaded to {remote}")

    def prune_backups(self, ctx: StepContext) -> StepOutcome:
        removed = ctx.state["backups"].prune()
        return StepOutcome(
            f"removed {len(removed)} backup(s) older than {self.settings.backup_retention_days} days",
            detail={"removed": [p.name for p in removed]},
        )

    # ── Rollback ─────────────────────────────────────────────────

    def check_last_good(self, ctx: StepContext) -> StepOutcome:
        tag = ctx.state["tag"]
        commit = self.ws.git().require_tag(tag)
        ctx.state["commit"] = commit
        return StepOutcome(f"{tag} is {commit[:12]}", detail={"commit": commit})

    def restore_compose_files(self, ctx: StepContext) -> StepOutcome:
        tag = ctx.state["tag"]
        changed = self.ws.git().checkout_paths(tag, self.settings.docker_dir)
        ctx.state.pop("compose_model", None)
        return StepOutcome(f"restored {len(changed)} file(s) from {tag}", detail={"files": changed})


# ---------------------------------------------------------------------------
# Pipeline builders
# ---------------------------------------------------------------------------


def deploy_steps(steps: HomelabSteps, skip_pull: bool = False) -> list[Step]:
    pull = Step("pull-images", steps.pull_images, fatal=False, description="docker compose pull")
    if skip_pull:
        pull = Step("pull-images", lambda ctx: StepOutcome("skipped (--skip-pull)"), fatal=False)
    return [
        Step("resolve-environment", steps.resolve_environment),
        Step("validate-environment", steps.validate_environment),
        Step("validate-compose-syntax", steps.validate_compose),
        Step("check-port-conflicts", steps.check_ports),
        Step("prepare-directories", steps.prepare_directories),
        pull,
        Step("start-containers", steps.start_containers),
        Step("reconfigure-tunnel-ingress", steps.reconfigure_tunnel, fatal=False),
        Step("health-check-all", steps.health_check, fatal=False),
    ]


def validate_steps(steps: HomelabSteps) -> list[Step]:
    return [
        Step("dependency-check", steps.check_dependencies),
        Step("resource-check", steps.check_resources, fatal=False),
        Step("environment-check", steps.validate_environment),
        Step("compose-syntax-check", steps.validate_compose),
        Step("port-conflict-check", steps.check_ports),
        Step("logging-driver-check", steps.check_logging_driver),
        Step("tunnel-config-check", steps.check_tunnel_config),
        Step("security-posture-check", steps.check_security, fatal=False),
    ]


def backup_steps(steps: HomelabSteps, encrypt: bool = True, remote: str | None = None) -> list[Step]:
    pipeline = [Step("create-archive", steps.create_archive)]
    if encrypt:
        pipeline.append(Step("encrypt-archive", steps.encrypt_archive))
    pipeline.append(Step("verify-archive", steps.verify_archive))
    if remote:
        pipeline.append(Step("upload-archive", steps.upload_archive, fatal=False))
    pipeline.append(Step("prune-old-backups", steps.prune_backups, fatal=False))
    return pipeline


def rollback_steps(steps: HomelabSteps) -> list[Step]:
    return [
        Step("check-last-good", steps.check_last_good),
        Step("restore-compose-files", steps.restore_compose_files),
        Step("start-containers", steps.start_containers),
        Step("health-check-all", steps.health_check, fatal=False),
    ]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def run_deploy(
    workspace: Workspace,
    *,
    skip_pull: bool = False,
    engine: PipelineEngine | None = None,
    steps: HomelabSteps | None = None,
) -> PipelineRun:
    steps = steps or HomelabSteps(workspace)
    return (engine or PipelineEngine()).execute(deploy_steps(steps, skip_pull), name="deploy")


def run_validate(
    workspace: Workspace,
    *,
    engine: PipelineEngine | None = None,
    steps: HomelabSteps | None = None,
) -> PipelineRun:
    steps = steps or HomelabSteps(workspace)
    return (engine or PipelineEngine()).execute(validate_steps(steps), name="validate")


def run_backup(
    workspace: Workspace,
    *,
    encrypt: bool | None = None,
    remote: str | None = None,
    engine: PipelineEngine | None = None,
    steps: HomelabSteps | None = None,
) -> PipelineRun:
    settings = workspace.settings
    encrypt = settings.backup_encrypt if encrypt is None else encrypt
    remote = remote or settings.backup_remote
    steps = steps or HomelabSteps(workspace)
    state = {"backups": workspace.backups(), "remote": remote}
    return (engine or PipelineEngine()).execute(
        backup_steps(steps, encrypt=encrypt, remote=remote), name="backup", state=state
    )


def run_rollback(
    workspace: Workspace,
    *,
    tag: str | None = None,
    engine: PipelineEngine | None = None,
    steps: HomelabSteps | None = None,
) -> PipelineRun:
    steps = steps or HomelabSteps(workspace)
    state = {"tag": tag or workspace.settings.last_good_tag}
    return (engine or PipelineEngine()).execute(rollback_steps(steps), name="rollback", state=state)
