"""
Shared pytest fixtures for sol-deploy tests.

This module provides:
- A throwaway homelab project tree (docker/, env.template, tunnel files)
- DeploySettings pointed at that tree
- ScriptedRunner / Workspace wiring so no test needs Docker or a network

Usage:
    def test_something(workspace, runner):
        runner.script("docker", ["compose", "ps"], stdout=ps_output(...))
        run = run_deploy(workspace)
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import httpx
import pytest

from sol_deploy.core.settings import DeploySettings, clear_settings_cache
from sol_deploy.deploy.workspace import Workspace
from sol_deploy.logging import configure_logging
from sol_deploy.testing import ScriptedRunner

TUNNEL_ID = "3f1c2b9a-8d7e-4c6b-9a5f-1e2d3c4b5a69"
OTHER_TUNNEL_ID = "9b8a7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"

ENV_TEMPLATE = """\
# Homelab environment
PUID=1000
PGID=1000
TZ=America/New_York

# n8n
N8N_USER=admin
N8N_PASSWORD=<generate_secure_password_here>

# Grafana
GRAFANA_ADMIN_PASSWORD=<generate_secure_password_here>

# Optional
PLEX_CLAIM=<your_plex_claim_token>
"""

TUNNEL_CONFIG = """\
tunnel: <TUNNEL_UUID>
credentials-file: /etc/cloudflared/<TUNNEL_UUID>.json
ingress:
  - hostname: plex.example.com
    service: http://plex:32400
  - hostname: grafana.example.com
    service: http://grafana:3000
  - service: http_status:404
"""

INFRA_COMPOSE = """\
services:
  cloudflared:
    image: cloudflare/cloudflared:latest
    command: tunnel --no-autoupdate run <TUNNEL_UUID>
    volumes:
      - ./cloudflared:/etc/cloudflared
"""

#: Rendered compose model (``docker compose config --format json``).
COMPOSE_MODEL = {
    "name": "homelab",
    "services": {
        "whoami": {
            "image": "traefik/whoami",
            "ports": [{"mode": "ingress", "target": 80, "published": "8000", "protocol": "tcp"}],
        },
        "grafana": {
            "image": "grafana/grafana",
            "ports": [{"mode": "ingress", "target": 3000, "published": "3000", "protocol": "tcp"}],
        },
    },
}


# =============================================================================
# Session-wide configuration
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def _quiet_logging():
    """Configure structlog once, before any CliRunner swaps sys.stderr."""
    configure_logging(level="WARNING", format="console", force=True)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SOL_DEPLOY_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Project tree
# =============================================================================


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A homelab tree whose tunnel has not been set up yet."""
    docker = tmp_path / "docker"
    (docker / "cloudflared").mkdir(parents=True)
    (docker / "services").mkdir()
    (docker / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (docker / "env.template").write_text(ENV_TEMPLATE, encoding="utf-8")
    (docker / "cloudflared" / "config.yml").write_text(TUNNEL_CONFIG, encoding="utf-8")
    (docker / "services" / "infrastructure.yml").write_text(INFRA_COMPOSE, encoding="utf-8")
    return tmp_path


@pytest.fixture
def configured_project(project: Path) -> Path:
    """The same tree with a consistent tunnel id and readable credentials."""
    for path in (
        project / "docker" / "cloudflared" / "config.yml",
        project / "docker" / "services" / "infrastructure.yml",
    ):
        path.write_text(path.read_text(encoding="utf-8").replace("<TUNNEL_UUID>", TUNNEL_ID), encoding="utf-8")
    creds = project / "docker" / "cloudflared" / f"{TUNNEL_ID}.json"
    creds.write_text(json.dumps({"TunnelID": TUNNEL_ID, "AccountTag": "abc"}), encoding="utf-8")
    creds.chmod(0o640)
    return project


# =============================================================================
# Settings / runner / workspace
# =============================================================================


def _settings(root: Path) -> DeploySettings:
    return DeploySettings(
        project_root=root,
        check_host_ports=False,
        local_services={"whoami": 8000, "grafana": 3000},
    )


@pytest.fixture
def settings(project: Path) -> DeploySettings:
    return _settings(project)


@pytest.fixture
def configured_settings(configured_project: Path) -> DeploySettings:
    return _settings(configured_project)


@pytest.fixture
def runner(project: Path) -> ScriptedRunner:
    scripted = ScriptedRunner(project)
    scripted.script("docker", ["compose", "config", "--format", "json"], stdout=json.dumps(COMPOSE_MODEL))
    return scripted


@pytest.fixture
def healthy_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))


@pytest.fixture
def workspace(settings: DeploySettings, runner: ScriptedRunner, healthy_transport) -> Workspace:
    return Workspace(settings, runner, transport=healthy_transport)


@pytest.fixture
def configured_workspace(configured_settings: DeploySettings, runner: ScriptedRunner, healthy_transport) -> Workspace:
    return Workspace(configured_settings, runner, transport=healthy_transport)
