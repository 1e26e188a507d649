"""
Centralized settings for sol-deploy.

Every tunable of the orchestrator lives on :class:`DeploySettings`: where
the homelab's compose files and ``.env`` live, how long external commands
may run, which services form a group, where backups go. Values come from
``SOL_DEPLOY_*`` environment variables or explicit keyword arguments (the
CLI passes ``project_root``).

Relative paths are always resolved against ``project_root``; nothing below
the CLI looks at the process working directory.

Tags:
    sol-deploy, configuration, settings, pydantic, caching
"""

from __future__ import annotations

from pathlib import Path

try:
    from pydantic_settings import BaseSettings, SettingsConfigDict
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "sol_deploy.core.settings requires pydantic-settings. "
        "Install it with: pip install pydantic-settings"
    ) from exc

from pydantic import Field, field_validator

#: Default service groups, as managed by ``sol-deploy services``.
DEFAULT_SERVICE_GROUPS: dict[str, list[str]] = {
    "media": ["plex", "sonarr", "radarr", "prowlarr", "bazarr", "overseerr", "tautulli"],
    "vpn": ["gluetun", "qbittorrent"],
    "monitoring": [
        "glances",
        "uptime-kuma",
        "dozzle",
        "prometheus",
        "grafana",
        "loki",
        "promtail",
        "node-exporter",
        "cadvisor",
    ],
    "infrastructure": ["cloudflared", "adguardhome", "portainer", "homarr", "n8n", "watchtower"],
}

#: Bind-mount sources created under ``docker/`` before the stack starts.
DEFAULT_DATA_DIRS: list[str] = [
    "adguard/work",
    "adguard/conf",
    "cloudflared",
    "portainer",
    "homarr/configs",
    "n8n",
    "watchtower",
    *(f"{name}/config" for name in ("plex", "sonarr", "radarr", "prowlarr", "bazarr", "overseerr", "tautulli")),
    "qbittorrent/config",
    "glances/data",
    "uptime-kuma/data",
    "dozzle/data",
    "prometheus/data",
    "grafana/data",
    "loki/data",
]

#: Locally published web UIs probed by ``status`` and the deploy health step.
DEFAULT_LOCAL_SERVICES: dict[str, int] = {
    "plex": 32400,
    "sonarr": 8989,
    "radarr": 7878,
    "n8n": 5678,
    "qbittorrent": 8080,
    "portainer": 9000,
    "homarr": 7575,
    "prowlarr": 9696,
    "bazarr": 6767,
    "overseerr": 5055,
    "tautulli": 8181,
    "glances": 61208,
    "uptime-kuma": 3001,
    "dozzle": 9999,
    "grafana": 3000,
}


def find_project_root(start: Path | None = None) -> Path:
    """Walk upward from *start* to find the homelab project root.

    Recognised root markers (checked in order):

    * ``docker/docker-compose.yml``
    * ``.git`` directory

    Falls back to *start* (or cwd) when no marker is found.
    """
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if (directory / "docker" / "docker-compose.yml").exists():
            return directory
        if (directory / ".git").exists():
            return directory
    return current


class DeploySettings(BaseSettings):
    """sol-deploy configuration.

    All fields can be set via ``SOL_DEPLOY_*`` environment variables (e.g.
    ``SOL_DEPLOY_PROBE_TIMEOUT_MS=2000``). List and dict fields take JSON.
    """

    model_config = SettingsConfigDict(
        env_prefix="SOL_DEPLOY_",
        extra="ignore",
    )

    # ── Layout ───────────────────────────────────────────────────
    project_root: Path = Field(default_factory=lambda: find_project_root())
    docker_dir: str = Field(default="docker")
    env_file: str = Field(default="docker/.env")
    env_template: str = Field(default="docker/env.template")
    compose_files: list[str] = Field(default_factory=list, description="Extra -f files, relative to docker_dir")

    # ── Tunnel ───────────────────────────────────────────────────
    tunnel_config: str = Field(default="docker/cloudflared/config.yml")
    tunnel_compose_file: str = Field(default="docker/services/infrastructure.yml")
    credentials_dir: str = Field(default="docker/cloudflared")
    cloudflared_image: str = Field(default="cloudflare/cloudflared:latest")
    tunnel_service: str = Field(default="cloudflared")
    tunnel_name_prefix: str = Field(default="sol-homelab")

    # ── Timeouts ─────────────────────────────────────────────────
    command_timeout_seconds: float = Field(default=300.0)
    pull_timeout_seconds: float | None = Field(default=None, description="None = wait for the pull")
    probe_timeout_ms: int = Field(default=5000)
    probe_concurrency: int = Field(default=8)

    # ── Environment ──────────────────────────────────────────────
    password_length: int = Field(default=24, ge=12, le=128)
    generated_keys: list[str] = Field(default=["N8N_PASSWORD", "GRAFANA_ADMIN_PASSWORD"])
    required_env_keys: list[str] = Field(
        default=["PUID", "PGID", "TZ", "N8N_USER", "N8N_PASSWORD", "GRAFANA_ADMIN_PASSWORD"]
    )

    # ── Services ─────────────────────────────────────────────────
    check_host_ports: bool = Field(default=True)
    service_groups: dict[str, list[str]] = Field(default_factory=lambda: dict(DEFAULT_SERVICE_GROUPS))
    local_services: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_LOCAL_SERVICES))
    data_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_DATA_DIRS), description="Relative to docker_dir")
    open_dirs: list[str] = Field(default=["cloudflared", "adguard/work", "adguard/conf"], description="chmod 755")
    logging_plugin: str = Field(default="loki", description="Alias of the docker logging driver plugin")
    logging_plugin_image: str = Field(default="grafana/loki-docker-driver:latest")

    # ── Host resources (advisory) ────────────────────────────────
    min_memory_gb: float = Field(default=4.0, ge=0)
    min_disk_gb: float = Field(default=50.0, ge=0)

    # ── Backup / rollback ────────────────────────────────────────
    backup_dir: str = Field(default="backups")
    backup_retention_days: int = Field(default=30, ge=0)
    backup_encrypt: bool = Field(default=True)
    backup_password_file: str = Field(default=".backup_password")
    backup_remote: str | None = Field(default=None, description="rclone remote path, e.g. proton:homelab-backups/")
    last_good_tag: str = Field(default="last-good")

    # ── Reporting / logging ──────────────────────────────────────
    report_dir: str | None = Field(default=None)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("project_root")
    @classmethod
    def _absolute_root(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    # ── Derived paths ────────────────────────────────────────────

    def path(self, relative: str | Path) -> Path:
        """Resolve *relative* against the project root."""
        candidate = Path(relative).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.project_root / candidate

    @property
    def docker_path(self) -> Path:
        return self.path(self.docker_dir)

    @property
    def env_path(self) -> Path:
        return self.path(self.env_file)

    @property
    def env_template_path(self) -> Path:
        return self.path(self.env_template)

    @property
    def tunnel_config_path(self) -> Path:
        return self.path(self.tunnel_config)

    @property
    def tunnel_compose_path(self) -> Path:
        return self.path(self.tunnel_compose_file)

    @property
    def credentials_path(self) -> Path:
        return self.path(self.credentials_dir)

    @property
    def backup_path(self) -> Path:
        return self.path(self.backup_dir)

    @property
    def backup_password_path(self) -> Path:
        return self.path(self.backup_password_file)

    def expand_group(self, name: str) -> list[str]:
        """Return the services in group *name*; ``all`` means every group.

        Raises
        ------
        KeyError
            If the group is unknown.
        """
        if name == "all":
            services: list[str] = []
            for members in self.service_groups.values():
                services.extend(s for s in members if s not in services)
            return services
        return list(self.service_groups[name])


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, DeploySettings] = {}


def get_settings(
    *,
    project_root: Path | None = None,
    _force_reload: bool = False,
) -> DeploySettings:
    """Load, validate, and cache a :class:`DeploySettings` instance.

    Parameters
    ----------
    project_root:
        Override the auto-detected project root.
    _force_reload:
        Bypass cache and reload.
    """
    root = (project_root or find_project_root()).resolve()
    cache_key = str(root)

    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    settings = DeploySettings(project_root=root)
    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
