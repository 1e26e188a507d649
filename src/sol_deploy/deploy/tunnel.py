"""Cloudflare tunnel configuration for sol-deploy.

Keeps the three tunnel artifacts consistent (``cloudflared/config.yml``,
the compose file that runs ``cloudflared``, and the credentials JSON),
registers DNS routes, and drives the setup state machine.

Why This Matters — Homelab Operations:
    The tunnel UUID appears in three places. Setup used to ``sed`` the
    ``<TUNNEL_UUID>`` placeholder in two YAML files, and a half-finished
    setup left one file pointing at a new tunnel and the other at the
    old one. The result was a cloudflared container that restarted forever
    with an unhelpful error. ``ensure_consistent_id()`` refuses to deploy
    that state, and the YAML is rewritten structurally.

Key Concepts:
    TunnelArtifact: ``(name, content)`` scanned for UUIDs / placeholders.
        Built from the ``tunnel`` and ``credentials-file`` values of
        ``config.yml`` and the ``cloudflared`` service definition only;
        the other services in that compose file are never scanned.
    ensure_consistent_id(): The single UUID shared by all artifacts, or a
        ConfigError (ID_MISSING / ID_MISMATCH).
    TunnelConfig / IngressRoute: Structured view of ``config.yml``.
    classify_route_output(): The one place that knows cloudflared's
        ``route dns`` output strings.
    TunnelCli: ``docker run cloudflare/cloudflared tunnel ...`` adapter.
    TunnelConfigurator: register/remove routes, credential checks,
        ``detect_state()`` and the idempotent ``setup()``.

State machine::

    UNCONFIGURED → ID_ASSIGNED → CREDENTIALS_DOWNLOADED
                                        ↓
                        ROUTES_PARTIAL | ROUTES_COMPLETE

Architecture Decisions:
    - cloudflared runs in a throwaway container with the credentials
      directory mounted at ``/root/.cloudflared``; no host install.
    - Route registration is per-hostname: one failure is recorded and the
      rest still run. "Already exists" counts as success.
    - Unrecognised ``route dns`` output is UNKNOWN (a failure), never a
      silent success.
    - PyYAML rewrites drop comments in ``config.yml``; values and order of
      keys are kept.

Related Modules:
    - :mod:`sol_deploy.deploy.runner` — Executes cloudflared
    - :mod:`sol_deploy.deploy.interaction` — Operator decisions in setup
    - :mod:`sol_deploy.cli.tunnel` — ``sol-deploy tunnel`` commands

Tags:
    cloudflare, tunnel, ingress, dns, credentials, yaml
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from sol_deploy.core.errors import ConfigError, ErrorKind, ExternalCommandError
from sol_deploy.deploy.interaction import Operator
from sol_deploy.deploy.runner import CommandResult, CommandRunner
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

TUNNEL_PLACEHOLDER = "<TUNNEL_UUID>"
UUID_RE = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")
DEFAULT_CATCH_ALL = "http_status:404"
CONTAINER_CREDENTIALS_DIR = "/etc/cloudflared"
CLOUDFLARED_IMAGE = "cloudflare/cloudflared:latest"


def is_uuid(value: str) -> bool:
    return bool(UUID_RE.fullmatch(value.strip()))


# ---------------------------------------------------------------------------
# ID consistency
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TunnelArtifact:
    """A named piece of text that may embed the tunnel id."""

    name: str
    content: str


def ensure_consistent_id(artifacts: Sequence[TunnelArtifact]) -> str:
    """Return the one tunnel UUID shared by every artifact.

    Raises
    ------
    ConfigError
        ID_MISSING when no artifact contains a real UUID; ID_MISMATCH when
        two distinct UUIDs are found or a placeholder remains next to a
        real UUID. All offending artifacts are listed in ``problems``.
    """
    found: dict[str, list[str]] = {}
    placeholders: list[str] = []
    for artifact in artifacts:
        for match in UUID_RE.findall(artifact.content):
            owners = found.setdefault(match.lower(), [])
            if artifact.name not in owners:
                owners.append(artifact.name)
        if TUNNEL_PLACEHOLDER in artifact.content:
            placeholders.append(artifact.name)

    if not found:
        problems = [f"{name}: still contains {TUNNEL_PLACEHOLDER}" for name in placeholders]
        raise ConfigError(
            "No tunnel id configured",
            kind=ErrorKind.ID_MISSING,
            problems=problems or ["no tunnel UUID found in " + ", ".join(a.name for a in artifacts)],
            remediation="Run: sol-deploy tunnel setup",
        )

    if len(found) > 1 or placeholders:
        problems = [f"{name}: {uuid}" for uuid, names in sorted(found.items()) for name in names]
        problems.extend(f"{name}: still contains {TUNNEL_PLACEHOLDER}" for name in placeholders)
        raise ConfigError(
            "Tunnel id differs between configuration files",
            kind=ErrorKind.ID_MISMATCH,
            problems=problems,
            remediation="Run: sol-deploy tunnel setup (re-applies one id to every file)",
        )

    return next(iter(found))


def credentials_path(credentials_dir: Path, tunnel_id: str) -> Path:
    return credentials_dir / f"{tunnel_id.lower()}.json"


# ---------------------------------------------------------------------------
# config.yml model
# ---------------------------------------------------------------------------


@dataclass
class IngressRoute:
    """One hostname rule of the tunnel ingress list."""

    hostname: str
    service_url: str
    tls_verify: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IngressRoute:
        extra = {k: v for k, v in data.items() if k not in ("hostname", "service")}
        origin = dict(extra.pop("originRequest", None) or {})
        tls_verify = not origin.pop("noTLSVerify", False)
        if origin:
            extra["originRequest"] = origin
        return cls(str(data["hostname"]), str(data.get("service", "")), tls_verify, extra)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"hostname": self.hostname, "service": self.service_url}
        extra = dict(self.extra)
        origin = dict(extra.pop("originRequest", None) or {})
        if not self.tls_verify:
            origin["noTLSVerify"] = True
        if origin:
            data["originRequest"] = origin
        data.update(extra)
        return data


@dataclass
class TunnelConfig:
    """Structured ``cloudflared/config.yml``."""

    tunnel_id: str | None = None
    credentials_file: str | None = None
    ingress_routes: list[IngressRoute] = field(default_factory=list)
    catch_all: str = DEFAULT_CATCH_ALL
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def hostnames(self) -> list[str]:
        return [r.hostname for r in self.ingress_routes]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TunnelConfig:
        routes = []
        catch_all = DEFAULT_CATCH_ALL
        for rule in data.get("ingress") or []:
            if rule.get("hostname"):
                routes.append(IngressRoute.from_dict(rule))
            else:
                catch_all = str(rule.get("service", DEFAULT_CATCH_ALL))
        extra = {k: v for k, v in data.items() if k not in ("tunnel", "credentials-file", "ingress")}
        tunnel = data.get("tunnel")
        return cls(
            tunnel_id=str(tunnel) if tunnel else None,
            credentials_file=data.get("credentials-file"),
            ingress_routes=routes,
            catch_all=catch_all,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.tunnel_id:
            data["tunnel"] = self.tunnel_id
        if self.credentials_file:
            data["credentials-file"] = self.credentials_file
        data.update(self.extra)
        data["ingress"] = [r.to_dict() for r in self.ingress_routes] + [{"service": self.catch_all}]
        return data

    @classmethod
    def load(cls, path: Path) -> TunnelConfig:
        """Parse *path*.

        Raises
        ------
        ConfigError
            If the file is missing or not a YAML mapping.
        """
        if not path.is_file():
            raise ConfigError(
                f"Tunnel configuration not found: {path}",
                remediation="Create docker/cloudflared/config.yml or run: sol-deploy tunnel setup",
            ).with_context(path=str(path))
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Tunnel configuration is not valid YAML: {path}", problems=[str(exc)]) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Tunnel configuration is not a mapping: {path}")
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def upsert_route(self, route: IngressRoute) -> bool:
        """Add or replace the rule for ``route.hostname``; True if changed."""
        for i, existing in enumerate(self.ingress_routes):
            if existing.hostname == route.hostname:
                if existing == route:
                    return False
                self.ingress_routes[i] = route
                return True
        self.ingress_routes.append(route)
        return True

    def remove_route(self, hostname: str) -> bool:
        before = len(self.ingress_routes)
        self.ingress_routes = [r for r in self.ingress_routes if r.hostname != hostname]
        return len(self.ingress_routes) != before


def replace_in_strings(node: Any, old: str, new: str) -> tuple[Any, int]:
    """Replace *old* in every string of a parsed YAML tree.

    Returns the new tree and the number of strings changed. Keys are left
    alone; only scalar values are rewritten.
    """
    if isinstance(node, str):
        if old in node:
            return node.replace(old, new), 1
        return node, 0
    if isinstance(node, dict):
        changed = 0
        result = {}
        for key, value in node.items():
            result[key], n = replace_in_strings(value, old, new)
            changed += n
        return result, changed
    if isinstance(node, list):
        changed = 0
        items = []
        for value in node:
            item, n = replace_in_strings(value, old, new)
            items.append(item)
            changed += n
        return items, changed
    return node, 0


# ---------------------------------------------------------------------------
# cloudflared output adapters
# ---------------------------------------------------------------------------


class RouteStatus(str, Enum):
    REGISTERED = "REGISTERED"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class RouteResult:
    """Outcome of registering one hostname."""

    hostname: str
    status: RouteStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (RouteStatus.REGISTERED, RouteStatus.ALREADY_EXISTS)


_ALREADY_EXISTS_MARKERS = ("already exists", "already configured to route")
_REGISTERED_MARKERS = ("added cname",)


def classify_route_output(exit_code: int, text: str) -> RouteStatus:
    """Classify ``cloudflared tunnel route dns`` output.

    Pinned to the strings cloudflared prints today::

        INF Added CNAME plex.example.com which will route to this tunnel
        ERR ... record with that host already exists
        INF plex.example.com is already configured to route to your tunnel
    """
    lowered = text.lower()
    if any(marker in lowered for marker in _ALREADY_EXISTS_MARKERS):
        return RouteStatus.ALREADY_EXISTS
    if exit_code == 0 and any(marker in lowered for marker in _REGISTERED_MARKERS):
        return RouteStatus.REGISTERED
    if exit_code != 0:
        return RouteStatus.FAILED
    return RouteStatus.UNKNOWN


_CREATED_RE = re.compile(r"Created tunnel\s+(?P<name>\S+)\s+with id:?\s+(?P<id>[0-9a-fA-F-]{36})")


def parse_created_tunnel_id(text: str) -> str | None:
    """Extract the UUID from ``tunnel create`` output."""
    match = _CREATED_RE.search(text)
    return match.group("id").lower() if match else None


@dataclass(frozen=True)
class TunnelInfo:
    id: str
    name: str


def parse_tunnel_list(text: str) -> list[TunnelInfo]:
    """Parse ``tunnel list`` table output; "No tunnels" yields []."""
    if "no tunnels" in text.lower():
        return []
    tunnels = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and is_uuid(parts[0]):
            tunnels.append(TunnelInfo(parts[0].lower(), parts[1]))
    return tunnels


def new_tunnel_name(prefix: str = "sol-homelab", now: datetime | None = None) -> str:
    return f"{prefix}-{(now or datetime.now()).strftime('%Y%m%d-%H%M')}"


class TunnelCli:
    """Runs cloudflared in a throwaway container.

    Parameters
    ----------
    runner:
        Command runner (the host needs only ``docker``).
    credentials_dir:
        Host directory mounted as ``/root/.cloudflared``; holds
        ``cert.pem`` and ``<uuid>.json``.
    image:
        cloudflared image reference.
    """

    def __init__(
        self,
        runner: CommandRunner,
        credentials_dir: Path,
        image: str = CLOUDFLARED_IMAGE,
        timeout: float | None = 120.0,
    ) -> None:
        self.runner = runner
        self.credentials_dir = credentials_dir
        self.image = image
        self.timeout = timeout

    def _run(self, args: Sequence[str], *, capture: bool = True, timeout: float | None = None) -> CommandResult:
        return self.runner.run(
            "docker",
            [
                "run",
                "--rm",
                "-v",
                f"{self.credentials_dir}:/root/.cloudflared",
                self.image,
                "tunnel",
                *args,
            ],
            timeout if timeout is not None else self.timeout,
            capture=capture,
        )

    @property
    def logged_in(self) -> bool:
        return (self.credentials_dir / "cert.pem").is_file()

    def login(self) -> CommandResult:
        """Interactive browser login; output goes straight to the terminal."""
        return self._run(["login"], capture=False, timeout=600).check(
            "Cloudflare login failed",
            remediation="Re-run 'sol-deploy tunnel setup' and complete the browser login",
        )

    def list_tunnels(self) -> list[TunnelInfo]:
        result = self._run(["list"])
        if not result.ok:
            # New accounts may not be able to list yet.
            logger.warning("tunnel.list_failed", exit_code=result.exit_code, stderr=result.stderr[-300:])
            return []
        return parse_tunnel_list(result.output)

    def create(self, name: str) -> str:
        """Create a tunnel and return its UUID.

        Raises
        ------
        ExternalCommandError
            If cloudflared fails or its output has no tunnel id.
        """
        result = self._run(["create", name]).check(
            f"Failed to create tunnel {name}",
            remediation="Check that your Cloudflare account has tunnel permissions",
        )
        tunnel_id = parse_created_tunnel_id(result.output)
        if tunnel_id is None:
            raise ExternalCommandError(f"Could not find the id of tunnel {name} in cloudflared output", result=result)
        return tunnel_id

    def download(self, tunnel_id: str) -> CommandResult:
        return self._run(["download", tunnel_id]).check(
            "Failed to download tunnel credentials",
            remediation="Log in again with: sol-deploy tunnel setup",
        )

    def route_dns(self, tunnel_id: str, hostname: str) -> RouteResult:
        result = self._run(["route", "dns", tunnel_id, hostname])
        if result.timed_out:
            return RouteResult(hostname, RouteStatus.FAILED, "timed out")
        status = classify_route_output(result.exit_code, result.output)
        last_line = result.output.strip().splitlines()[-1] if result.output.strip() else ""
        return RouteResult(hostname, status, last_line[:300])


# ---------------------------------------------------------------------------
# Configurator
# ---------------------------------------------------------------------------


class TunnelState(str, Enum):
    UNCONFIGURED = "UNCONFIGURED"
    ID_ASSIGNED = "ID_ASSIGNED"
    CREDENTIALS_DOWNLOADED = "CREDENTIALS_DOWNLOADED"
    ROUTES_PARTIAL = "ROUTES_PARTIAL"
    ROUTES_COMPLETE = "ROUTES_COMPLETE"


@dataclass
class TunnelSetupReport:
    """What ``setup()`` found and did."""

    state: TunnelState
    tunnel_id: str | None = None
    actions: list[str] = field(default_factory=list)
    routes: list[RouteResult] = field(default_factory=list)

    @property
    def failed_routes(self) -> list[RouteResult]:
        return [r for r in self.routes if not r.ok]


class TunnelConfigurator:
    """Keeps tunnel artifacts consistent and registers routes.

    Parameters
    ----------
    config_path:
        ``docker/cloudflared/config.yml``.
    compose_path:
        Compose file whose ``cloudflared`` service references the tunnel.
    tunnel_service:
        Name of that service; its definition is the only part of the
        compose file searched for the tunnel id.
    credentials_dir:
        Host directory holding ``<uuid>.json``.
    cli:
        cloudflared adapter; only needed for operations that talk to
        Cloudflare.
    """

    def __init__(
        self,
        config_path: Path,
        compose_path: Path | None,
        credentials_dir: Path,
        cli: TunnelCli | None = None,
        container_credentials_dir: str = CONTAINER_CREDENTIALS_DIR,
        name_prefix: str = "sol-homelab",
        tunnel_service: str = "cloudflared",
    ) -> None:
        self.config_path = config_path
        self.compose_path = compose_path
        self.credentials_dir = credentials_dir
        self.cli = cli
        self.container_credentials_dir = container_credentials_dir
        self.name_prefix = name_prefix
        self.tunnel_service = tunnel_service

    def _require_cli(self) -> TunnelCli:
        if self.cli is None:
            raise RuntimeError("TunnelConfigurator was built without a TunnelCli")
        return self.cli

    # ── Artifacts ────────────────────────────────────────────────

    def load_config(self) -> TunnelConfig:
        return TunnelConfig.load(self.config_path)

    def _compose_tree(self) -> dict[str, Any] | None:
        if self.compose_path is None or not self.compose_path.is_file():
            return None
        try:
            data = yaml.safe_load(self.compose_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Compose file is not valid YAML: {self.compose_path}", problems=[str(exc)]) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Compose file is not a mapping: {self.compose_path}")
        return data

    def _service_definition(self, data: dict[str, Any]) -> Any:
        return (data.get("services") or {}).get(self.tunnel_service)

    def artifacts(self) -> list[TunnelArtifact]:
        """The places that name the tunnel, as text.

        Only the ``tunnel`` key and the ``credentials-file`` name of
        ``config.yml`` and the tunnel service definition of the compose
        file are read. Other services may carry unrelated UUIDs.
        """
        artifacts = []
        if self.config_path.is_file():
            config = self.load_config()
            name = self.config_path.name
            artifacts.append(TunnelArtifact(name, config.tunnel_id or ""))
            if config.credentials_file:
                stem = PurePosixPath(config.credentials_file).stem
                artifacts.append(TunnelArtifact(f"{name} credentials-file", stem))
        data = self._compose_tree()
        if data is not None:
            service = self._service_definition(data)
            if service is not None:
                artifacts.append(TunnelArtifact(self.compose_path.name, yaml.safe_dump(service)))
        return artifacts

    def current_id(self) -> str:
        return ensure_consistent_id(self.artifacts())

    def _previous_ids(self, config: TunnelConfig, data: dict[str, Any] | None) -> set[str]:
        """UUIDs the tunnel artifacts name today, in their original case."""
        previous = set()
        if config.tunnel_id and is_uuid(config.tunnel_id):
            previous.add(config.tunnel_id.strip())
        if config.credentials_file:
            stem = PurePosixPath(config.credentials_file).stem
            if is_uuid(stem):
                previous.add(stem)
        if data is not None:
            service = self._service_definition(data)
            if service is not None:
                previous.update(UUID_RE.findall(yaml.safe_dump(service)))
        return previous

    def apply_tunnel_id(self, tunnel_id: str) -> list[str]:
        """Write *tunnel_id* into ``config.yml`` and the compose file.

        In the compose file only the ``<TUNNEL_UUID>`` placeholder and the
        id the tunnel artifacts named before are replaced; any other UUID
        is left alone. Returns the names of the files that changed.
        """
        if not is_uuid(tunnel_id):
            raise ConfigError(f"Not a tunnel UUID: {tunnel_id!r}", kind=ErrorKind.ID_MISSING)
        tunnel_id = tunnel_id.lower()
        changed = []

        config = self.load_config()
        data = self._compose_tree()
        stale_ids = {i for i in self._previous_ids(config, data) if i.lower() != tunnel_id}

        cred_dir = self.container_credentials_dir
        if config.credentials_file:
            cred_dir = str(PurePosixPath(config.credentials_file).parent)
        cred_file = str(PurePosixPath(cred_dir) / f"{tunnel_id}.json")
        if config.tunnel_id != tunnel_id or config.credentials_file != cred_file:
            config.tunnel_id = tunnel_id
            config.credentials_file = cred_file
            config.save(self.config_path)
            changed.append(self.config_path.name)

        if data is not None:
            data, count = replace_in_strings(data, TUNNEL_PLACEHOLDER, tunnel_id)
            for stale in sorted(stale_ids):
                data, more = replace_in_strings(data, stale, tunnel_id)
                count += more
            if count:
                tmp = self.compose_path.with_name(self.compose_path.name + ".tmp")
                tmp.write_text(yaml.safe_dump(data, sort_keys=False, default_flow_style=False), encoding="utf-8")
                os.replace(tmp, self.compose_path)
                changed.append(self.compose_path.name)

        logger.info("tunnel.id_applied", tunnel_id=tunnel_id, changed=changed)
        return changed

    # ── Credentials ──────────────────────────────────────────────

    def validate_credentials(self, tunnel_id: str, credentials_dir: Path | None = None) -> bool:
        path = credentials_path(credentials_dir or self.credentials_dir, tunnel_id)
        return path.is_file() and os.access(path, os.R_OK)

    def check_credentials(self, tunnel_id: str, credentials_dir: Path | None = None) -> Path:
        """Return the credentials path, or raise the specific problem."""
        path = credentials_path(credentials_dir or self.credentials_dir, tunnel_id)
        if not path.is_file():
            raise ConfigError(
                f"Tunnel credentials not found: {path}",
                kind=ErrorKind.CREDENTIALS_MISSING,
                remediation=f"Download them with: sol-deploy tunnel setup (cloudflared tunnel download {tunnel_id})",
            ).with_context(path=str(path))
        if not os.access(path, os.R_OK):
            raise ConfigError(
                f"Tunnel credentials are not readable: {path}",
                kind=ErrorKind.CREDENTIALS_UNREADABLE,
                remediation=f"chmod 640 {path}",
            ).with_context(path=str(path))
        return path

    def check(self) -> str:
        """Full consistency check used by ``validate``; returns the id."""
        tunnel_id = self.current_id()
        self.check_credentials(tunnel_id)
        return tunnel_id

    # ── Routes ───────────────────────────────────────────────────

    def register_routes(self, tunnel_id: str, hostnames: Iterable[str]) -> list[RouteResult]:
        """Register DNS for each hostname; failures do not stop the rest."""
        cli = self._require_cli()
        results = []
        for hostname in hostnames:
            try:
                result = cli.route_dns(tunnel_id, hostname)
            except ExternalCommandError as exc:
                result = RouteResult(hostname, RouteStatus.FAILED, exc.message)
            log = logger.info if result.ok else logger.warning
            log("tunnel.route", hostname=hostname, status=result.status.value)
            results.append(result)
        return results

    def add_routes(self, routes: Sequence[IngressRoute]) -> list[RouteResult]:
        """Add ingress rules to ``config.yml`` and register their DNS."""
        config = self.load_config()
        changed = [config.upsert_route(route) for route in routes]
        if any(changed):
            config.save(self.config_path)
        tunnel_id = self.current_id()
        return self.register_routes(tunnel_id, [r.hostname for r in routes])

    def remove_routes(self, hostnames: Iterable[str]) -> list[str]:
        """Drop ingress rules for *hostnames*; returns the ones removed.

        cloudflared cannot delete DNS records. The CNAME has to be removed
        in the Cloudflare dashboard.
        """
        config = self.load_config()
        removed = [h for h in hostnames if config.remove_route(h)]
        if removed:
            config.save(self.config_path)
            logger.info("tunnel.routes_removed", hostnames=removed)
        return removed

    # ── State machine ────────────────────────────────────────────

    def detect_state(self) -> TunnelState:
        """Inspect artifacts only; never talks to Cloudflare."""
        try:
            tunnel_id = self.current_id()
        except ConfigError as exc:
            if exc.kind == ErrorKind.ID_MISMATCH:
                # Config has an id, compose still has the placeholder.
                config_id = self._config_id()
                if config_id is not None:
                    return TunnelState.ID_ASSIGNED
            return TunnelState.UNCONFIGURED
        if not self.validate_credentials(tunnel_id):
            return TunnelState.ID_ASSIGNED
        return TunnelState.CREDENTIALS_DOWNLOADED

    def _config_id(self) -> str | None:
        if not self.config_path.is_file():
            return None
        config = self.load_config()
        if config.tunnel_id and is_uuid(config.tunnel_id):
            return config.tunnel_id.lower()
        return None

    def _choose_tunnel(self, cli: TunnelCli, operator: Operator, report: TunnelSetupReport) -> str:
        existing = cli.list_tunnels()
        if existing and operator.confirm(f"Found {len(existing)} existing tunnel(s). Use one of them?"):
            for info in existing:
                logger.info("tunnel.existing", id=info.id, name=info.name)
            answer = operator.prompt("Tunnel UUID", default=existing[0].id).strip()
            if is_uuid(answer):
                report.actions.append(f"reused tunnel {answer.lower()}")
                return answer.lower()
            logger.warning("tunnel.invalid_uuid", value=answer)
        name = new_tunnel_name(self.name_prefix)
        tunnel_id = cli.create(name)
        report.actions.append(f"created tunnel {name}")
        return tunnel_id

    def setup(self, operator: Operator, hostnames: Sequence[str] | None = None) -> TunnelSetupReport:
        """Bring the tunnel to ROUTES_COMPLETE, doing only what is missing.

        Re-running after a partial setup skips login when ``cert.pem``
        exists, keeps an assigned id, skips the credentials download when
        the file is present, and treats already-registered routes as done.
        """
        cli = self._require_cli()
        state = self.detect_state()
        report = TunnelSetupReport(state=state)
        logger.info("tunnel.setup_start", state=state.value)

        if state == TunnelState.UNCONFIGURED:
            if not cli.logged_in:
                cli.login()
                report.actions.append("logged in")
            tunnel_id = self._choose_tunnel(cli, operator, report)
        else:
            tunnel_id = self._config_id() or self.current_id()

        report.actions.extend(f"updated {name}" for name in self.apply_tunnel_id(tunnel_id))
        report.tunnel_id = tunnel_id
        report.state = TunnelState.ID_ASSIGNED

        if not credentials_path(self.credentials_dir, tunnel_id).is_file():
            cli.download(tunnel_id)
            report.actions.append("downloaded credentials")
        cred = credentials_path(self.credentials_dir, tunnel_id)
        if cred.is_file():
            os.chmod(cred, 0o640)
        self.check_credentials(tunnel_id)
        report.state = TunnelState.CREDENTIALS_DOWNLOADED

        if hostnames is None:
            hostnames = self.load_config().hostnames
        report.routes = self.register_routes(tunnel_id, hostnames)
        report.state = TunnelState.ROUTES_PARTIAL if report.failed_routes else TunnelState.ROUTES_COMPLETE
        logger.info("tunnel.setup_end", state=report.state.value, tunnel_id=tunnel_id)
        return report
