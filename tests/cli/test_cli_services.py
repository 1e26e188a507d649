"""Tests for the ``sol-deploy services`` sub-commands."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from sol_deploy.cli.app import app
from sol_deploy.core.errors import ExitCode
from sol_deploy.core.settings import DEFAULT_SERVICE_GROUPS
from sol_deploy.testing import ComposeService, ScriptedOperator, ps_output

cli = CliRunner()

STATS = (
    '{"Name":"plex","CPUPerc":"1.25%","MemUsage":"512MiB / 7.6GiB","MemPerc":"6.58%","NetIO":"1.2MB / 3.4MB"}\n'
    '{"Name":"grafana","CPUPerc":"0.10%","MemUsage":"80MiB / 7.6GiB","MemPerc":"1.03%","NetIO":"10kB / 2kB"}\n'
)


@pytest.fixture
def obj(settings, runner):
    return {"settings": settings, "runner": runner, "operator": ScriptedOperator()}


def test_list_json(obj, runner):
    services = ps_output(ComposeService("plex"), ComposeService("sonarr", "exited"))
    runner.script("docker", ["compose", "ps"], stdout=services)
    result = cli.invoke(app, ["services", "list", "--json"], obj=obj)

    assert result.exit_code == 0, result.output
    groups = json.loads(result.stdout)
    assert list(groups) == list(DEFAULT_SERVICE_GROUPS)
    assert groups["media"]["plex"] == "running"
    assert groups["media"]["sonarr"] == "exited"
    assert groups["vpn"] == {"gluetun": "absent", "qbittorrent": "absent"}


def test_list_table(obj, runner):
    runner.script("docker", ["compose", "ps"], stdout=ps_output(ComposeService("plex")))
    result = cli.invoke(app, ["services", "list"], obj=obj)
    assert result.exit_code == 0, result.output
    assert "plex" in result.output
    assert "absent" in result.output


class TestLifecycle:
    def test_start_group(self, obj, runner):
        result = cli.invoke(app, ["services", "start", "vpn"], obj=obj)

        assert result.exit_code == 0, result.output
        [call] = runner.called("docker", "compose", "up", "-d")
        assert call.args[-2:] == ("gluetun", "qbittorrent")
        assert "vpn: up done" in result.output

    def test_all_means_whole_project(self, obj, runner):
        result = cli.invoke(app, ["services", "stop", "all"], obj=obj)

        assert result.exit_code == 0, result.output
        [call] = runner.called("docker", "compose", "stop")
        assert call.args[-1] == "stop"

    def test_restart(self, obj, runner):
        result = cli.invoke(app, ["services", "restart", "infrastructure"], obj=obj)
        assert result.exit_code == 0, result.output
        [call] = runner.called("docker", "compose", "restart", "cloudflared")
        assert call.args[-1] == "watchtower"

    def test_update_pulls_then_recreates(self, obj, runner):
        result = cli.invoke(app, ["services", "update", "vpn"], obj=obj)

        assert result.exit_code == 0, result.output
        lines = [c.line for c in runner.calls if "pull" in c.args or "up" in c.args]
        assert lines[0].endswith("pull gluetun qbittorrent")
        assert lines[1].endswith("up -d gluetun qbittorrent")

    def test_unknown_group(self, obj, runner):
        result = cli.invoke(app, ["services", "start", "nope"], obj=obj)

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Unknown service group: nope" in result.output
        assert "Available groups: media, vpn, monitoring, infrastructure, all" in result.output
        assert runner.calls == []

    def test_compose_failure(self, obj, runner):
        runner.script("docker", ["compose", "stop"], exit_code=1, stderr="no such service: gluetun")
        result = cli.invoke(app, ["services", "stop", "vpn"], obj=obj)
        assert result.exit_code == ExitCode.COMMAND_FAILED
        assert "no such service: gluetun" in result.output

    def test_groups_from_environment(self, project, runner, monkeypatch):
        monkeypatch.setenv("SOL_DEPLOY_SERVICE_GROUPS", '{"web": ["whoami", "grafana"]}')
        result = cli.invoke(app, ["--root", str(project), "services", "start", "web"], obj={"runner": runner})

        assert result.exit_code == 0, result.output
        [call] = runner.called("docker", "compose", "up")
        assert call.args[-2:] == ("whoami", "grafana")


def test_logs(obj, runner):
    runner.script("docker", ["compose", "logs"], stdout="line one\nline two\n")
    result = cli.invoke(app, ["services", "logs", "plex", "--tail", "10"], obj=obj)

    assert result.exit_code == 0, result.output
    assert result.stdout == "line one\nline two\n"
    assert runner.called("docker", "compose", "logs", "--tail", "10", "plex")


class TestResources:
    def test_json(self, obj, runner):
        runner.script("docker", ["stats", "--no-stream"], stdout=STATS)
        result = cli.invoke(app, ["services", "resources", "--json"], obj=obj)

        assert result.exit_code == 0, result.output
        rows = json.loads(result.stdout)
        assert [r["Name"] for r in rows] == ["plex", "grafana"]
        assert rows[0]["CPUPerc"] == "1.25%"

    def test_table(self, obj, runner):
        runner.script("docker", ["stats", "--no-stream"], stdout=STATS)
        result = cli.invoke(app, ["services", "resources"], obj=obj)
        assert result.exit_code == 0, result.output
        assert "grafana" in result.output

    def test_docker_unavailable(self, obj, runner):
        runner.script("docker", ["stats"], exit_code=1, stderr="Cannot connect to the Docker daemon")
        result = cli.invoke(app, ["services", "resources"], obj=obj)
        assert result.exit_code == ExitCode.COMMAND_FAILED
