"""End-to-end pipeline tests against a ScriptedRunner.

No Docker, no network: compose, cloudflared, git and openssl are answered
from scripts and HTTP probes go to an httpx.MockTransport.
"""

import json
import stat
import tarfile

import httpx
import pytest

from sol_deploy.core.errors import ErrorKind, ExitCode
from sol_deploy.deploy import preflight
from sol_deploy.deploy.environment import PASSWORD_SENTINEL
from sol_deploy.deploy.pipelines import (
    HomelabSteps,
    logging_plugin_missing,
    run_backup,
    run_deploy,
    run_rollback,
    run_validate,
)
from sol_deploy.deploy.ports import DNS_REMEDIATION
from sol_deploy.deploy.results import RunOutcome
from sol_deploy.deploy.workspace import Workspace
from sol_deploy.testing import (
    ComposeService,
    ScriptedRunner,
    assert_run_failed_at,
    assert_run_succeeded,
    assert_steps,
    ps_output,
)

from conftest import COMPOSE_MODEL, TUNNEL_ID

DEPLOY_STEPS = [
    "resolve-environment",
    "validate-environment",
    "validate-compose-syntax",
    "check-port-conflicts",
    "prepare-directories",
    "pull-images",
    "start-containers",
    "reconfigure-tunnel-ingress",
    "health-check-all",
]


def _script_model(runner, model):
    runner.script("docker", ["compose", "config", "--format", "json"], stdout=json.dumps(model))


def _write_env(workspace):
    settings = workspace.settings
    resolver = workspace.resolver()
    resolver.write(resolver.resolve(settings.env_template_path), settings.env_template_path, settings.env_path)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('error looking up logging plugin loki: plugin "loki" not found', True),
        ("Error response from daemon: loki plugin not found", True),
        ('plugin "lokix" not found', False),
        ("no space left on device", False),
    ],
)
def test_logging_plugin_missing(text, expected):
    assert logging_plugin_missing(text, "loki") is expected


class TestDeploy:
    def test_fresh_deploy(self, workspace, settings, runner):
        run = run_deploy(workspace)

        assert_run_succeeded(run)
        assert_steps(run, DEPLOY_STEPS)
        env_text = settings.env_path.read_text(encoding="utf-8")
        assert PASSWORD_SENTINEL not in env_text
        assert stat.S_IMODE(settings.env_path.stat().st_mode) == 0o600
        assert run.result_for("resolve-environment").detail["changed"] is True
        assert run.result_for("reconfigure-tunnel-ingress").detail == {"skipped": True}
        assert runner.called("docker", "compose", "up", "-d")

    def test_deploy_twice_is_idempotent(self, workspace, settings, runner):
        running = ps_output(ComposeService("whoami"), ComposeService("grafana"))
        runner.script("docker", ["compose", "ps"], stdout=running)
        runner.script("docker", ["compose", "ps"], stdout="", times=1)

        first = run_deploy(workspace)
        env_after_first = settings.env_path.read_text(encoding="utf-8")
        second = run_deploy(workspace)

        assert_run_succeeded(first)
        assert_run_succeeded(second)
        assert first.result_for("start-containers").detail["already_running"] is False
        assert second.result_for("start-containers").detail["already_running"] is True
        assert second.result_for("resolve-environment").detail["changed"] is False
        assert settings.env_path.read_text(encoding="utf-8") == env_after_first

    def test_skip_pull(self, workspace, runner):
        run = run_deploy(workspace, skip_pull=True)
        assert run.result_for("pull-images").message == "skipped (--skip-pull)"
        assert not runner.called("docker", "compose", "pull")

    def test_pull_failure_is_not_fatal(self, workspace, runner):
        runner.script("docker", ["compose", "pull"], exit_code=1, stderr="registry unavailable")
        run = run_deploy(workspace)
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.exit_code == ExitCode.PARTIAL_FAILURE
        assert run.result_for("pull-images").stderr == "registry unavailable"
        assert run.result_for("start-containers").success

    def test_missing_required_key_stops_before_compose(self, workspace, settings, runner):
        settings.env_template_path.write_text("PUID=1000\n", encoding="utf-8")
        run = run_deploy(workspace)
        assert_run_failed_at(run, "validate-environment", ErrorKind.MISSING_REQUIRED_KEY)
        assert run.exit_code == ExitCode.CONFIG_ERROR
        assert len(run.result_for("validate-environment").errors) == 5
        assert not runner.called("docker", "compose", "up")

    def test_missing_template(self, workspace, settings):
        settings.env_template_path.unlink()
        run = run_deploy(workspace)
        assert_run_failed_at(run, "resolve-environment", ErrorKind.MISSING_TEMPLATE)

    def test_invalid_compose(self, workspace, runner):
        runner.script(
            "docker", ["compose", "config", "--quiet"], exit_code=1, stderr="services.plex.ports must be a list"
        )
        run = run_deploy(workspace)
        assert_run_failed_at(run, "validate-compose-syntax", ErrorKind.NON_ZERO_EXIT)
        assert run.exit_code == ExitCode.COMMAND_FAILED
        assert "ports must be a list" in run.result_for("validate-compose-syntax").stderr

    def test_port_collision(self, workspace, runner):
        model = {
            "services": {
                "grafana": {"ports": [{"target": 3000, "published": "3000"}]},
                "homarr": {"ports": ["3000:7575"]},
            }
        }
        _script_model(runner, model)
        run = run_deploy(workspace)
        assert_run_failed_at(run, "check-port-conflicts", ErrorKind.PORT_COLLISION)
        assert run.exit_code == ExitCode.CONFLICT
        assert "grafana, homarr" in run.result_for("check-port-conflicts").errors[0]
        assert not runner.called("docker", "compose", "pull")

    def test_dns_bind_failure_gets_remediation(self, workspace, runner):
        model = {"services": {"adguardhome": {"ports": ["53:53/udp"]}}}
        _script_model(runner, model)
        runner.script("docker", ["compose", "up"], exit_code=1, stderr="Error starting adguardhome")
        runner.script(
            "docker",
            ["compose", "logs"],
            stdout="listen udp 0.0.0.0:53: bind: address already in use",
        )
        run = run_deploy(workspace)
        assert_run_failed_at(run, "start-containers", ErrorKind.NON_ZERO_EXIT)
        step = run.result_for("start-containers")
        assert step.remediation == DNS_REMEDIATION
        assert "adguardhome could not bind port 53" in step.errors
        assert_steps(run, DEPLOY_STEPS[:7])

    def test_data_directories_are_prepared(self, workspace, settings):
        (settings.docker_path / "cloudflared").chmod(0o700)
        first = run_deploy(workspace)
        second = run_deploy(workspace)

        step = first.result_for("prepare-directories")
        assert step.detail["changed"] is True
        assert "loki/data" in step.detail["created"]
        assert "cloudflared" in step.detail["chmodded"]
        assert (settings.docker_path / "loki" / "data").is_dir()
        assert stat.S_IMODE((settings.docker_path / "cloudflared").stat().st_mode) == 0o755
        assert second.result_for("prepare-directories").detail == {"changed": False}

    def test_file_in_place_of_data_directory(self, workspace, settings, runner):
        (settings.docker_path / "portainer").write_text("oops\n", encoding="utf-8")
        run = run_deploy(workspace)
        assert_run_failed_at(run, "prepare-directories", ErrorKind.INVALID_CONFIG)
        assert run.exit_code == ExitCode.CONFIG_ERROR
        assert not runner.called("docker", "compose", "up")

    def test_missing_logging_plugin_gets_install_command(self, workspace, runner):
        model = {"services": {"grafana": {"image": "grafana/grafana", "logging": {"driver": "loki"}}}}
        _script_model(runner, model)
        runner.script(
            "docker",
            ["compose", "up"],
            exit_code=1,
            stderr='Error response from daemon: error looking up logging plugin loki: plugin "loki" not found',
        )
        run = run_deploy(workspace)
        assert_run_failed_at(run, "start-containers", ErrorKind.NON_ZERO_EXIT)
        step = run.result_for("start-containers")
        assert step.remediation == preflight.plugin_install_command("loki", "grafana/loki-docker-driver:latest")
        assert "docker logging plugin 'loki' is not installed" in step.errors

    def test_unrelated_up_failure_keeps_generic_message(self, workspace, runner):
        runner.script("docker", ["compose", "up"], exit_code=1, stderr="no space left on device")
        run = run_deploy(workspace)
        step = run.result_for("start-containers")
        assert step.remediation is None
        assert not any("logging plugin" in e for e in step.errors)

    def test_unhealthy_service_is_partial(self, settings, runner):
        def handler(request):
            return httpx.Response(502 if request.url.port == 3000 else 200)

        ws = Workspace(settings, runner, transport=httpx.MockTransport(handler))
        run = run_deploy(ws)
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        health = run.result_for("health-check-all")
        assert health.error_kind == ErrorKind.SERVER_ERROR
        assert health.errors == ("grafana (http://127.0.0.1:3000): UNHEALTHY - HTTP 502",)

    def test_tunnel_is_restarted_and_polled(self, configured_workspace, runner):
        model = dict(COMPOSE_MODEL, services={**COMPOSE_MODEL["services"], "cloudflared": {"image": "cf"}})
        _script_model(runner, model)
        runner.script("docker", ["compose", "logs"], stdout="INF Registered tunnel connection connIndex=0")
        steps = HomelabSteps(configured_workspace, tunnel_poll_interval=0)

        run = run_deploy(configured_workspace, steps=steps)

        assert_run_succeeded(run)
        tunnel = run.result_for("reconfigure-tunnel-ingress")
        assert tunnel.detail["tunnel_id"] == TUNNEL_ID
        assert tunnel.detail["hostnames"] == ["plex.example.com", "grafana.example.com"]
        assert runner.called("docker", "compose", "restart", "cloudflared")

    def test_tunnel_without_connection_is_partial(self, configured_workspace, runner):
        model = dict(COMPOSE_MODEL, services={**COMPOSE_MODEL["services"], "cloudflared": {"image": "cf"}})
        _script_model(runner, model)
        runner.script("docker", ["compose", "logs"], stdout="ERR Unauthorized: Invalid tunnel secret")
        steps = HomelabSteps(configured_workspace, tunnel_poll_attempts=3, tunnel_poll_interval=0)

        run = run_deploy(configured_workspace, steps=steps)

        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.result_for("reconfigure-tunnel-ingress").errors == ("ERR Unauthorized: Invalid tunnel secret",)
        assert len(runner.called("docker", "compose", "logs", "cloudflared")) == 3

    def test_logs_from_before_the_restart_are_ignored(self, configured_workspace, runner):
        model = dict(COMPOSE_MODEL, services={**COMPOSE_MODEL["services"], "cloudflared": {"image": "cf"}})
        _script_model(runner, model)
        runner.script("docker", ["compose", "logs"], stdout="INF Registered tunnel connection connIndex=0")
        runner.script("docker", ["compose", "logs", "--since"], stdout="INF Starting tunnel")
        steps = HomelabSteps(configured_workspace, tunnel_poll_attempts=2, tunnel_poll_interval=0)

        run = run_deploy(configured_workspace, steps=steps)

        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.result_for("reconfigure-tunnel-ingress").error_kind == ErrorKind.UNREACHABLE
        calls = runner.called("docker", "compose", "logs", "--since", "cloudflared")
        assert len(calls) == 2
        assert len({c.args[c.args.index("--since") + 1] for c in calls}) == 1
        verbs = [c.args[1] for c in runner.called("docker", "compose")]
        assert verbs.index("restart") < verbs.index("logs")

    def test_inconsistent_tunnel_is_partial(self, workspace, runner):
        model = dict(COMPOSE_MODEL, services={**COMPOSE_MODEL["services"], "cloudflared": {"image": "cf"}})
        _script_model(runner, model)
        run = run_deploy(workspace)
        step = run.result_for("reconfigure-tunnel-ingress")
        assert step.error_kind == ErrorKind.ID_MISSING
        assert run.result_for("health-check-all").success
        assert not runner.called("docker", "compose", "restart")


class TestValidate:
    def test_healthy_project(self, configured_workspace, runner):
        _write_env(configured_workspace)
        runner.script("docker", ["info"], stdout="27.3.1\n")
        runner.script("docker", ["compose", "version", "--short"], stdout="2.29.7\n")
        run = run_validate(configured_workspace)

        assert_run_succeeded(run)
        assert_steps(
            run,
            [
                "dependency-check",
                "resource-check",
                "environment-check",
                "compose-syntax-check",
                "port-conflict-check",
                "logging-driver-check",
                "tunnel-config-check",
                "security-posture-check",
            ],
        )
        assert run.result_for("dependency-check").detail["docker"] == "27.3.1"
        assert not runner.called("docker", "compose", "up")

    def test_missing_env_file(self, configured_workspace):
        run = run_validate(configured_workspace)
        assert_run_failed_at(run, "environment-check", ErrorKind.MISSING_REQUIRED_KEY)
        assert "sol-deploy env init" in run.result_for("environment-check").remediation

    def test_missing_docker(self, configured_settings, configured_project):
        runner = ScriptedRunner(configured_project, missing=["docker", "openssl"])
        run = run_validate(Workspace(configured_settings, runner))
        assert_run_failed_at(run, "dependency-check", ErrorKind.EXECUTABLE_NOT_FOUND)
        assert run.exit_code == ExitCode.EXECUTABLE_NOT_FOUND
        assert run.result_for("dependency-check").errors == ("docker not found on PATH", "openssl not found on PATH")

    def test_placeholder_tunnel_id(self, workspace):
        _write_env(workspace)
        run = run_validate(workspace)
        assert_run_failed_at(run, "tunnel-config-check", ErrorKind.ID_MISSING)

    def test_missing_logging_plugin(self, configured_workspace, runner):
        _write_env(configured_workspace)
        model = {"services": {"grafana": {"image": "grafana/grafana", "logging": {"driver": "loki"}}}}
        _script_model(runner, model)
        run = run_validate(configured_workspace)
        assert_run_failed_at(run, "logging-driver-check", ErrorKind.EXECUTABLE_NOT_FOUND)
        assert run.exit_code == ExitCode.EXECUTABLE_NOT_FOUND
        assert run.result_for("logging-driver-check").remediation == (
            "docker plugin install grafana/loki-docker-driver:latest --alias loki --grant-all-permissions"
        )

    def test_installed_logging_plugin(self, configured_workspace, runner):
        _write_env(configured_workspace)
        model = {"services": {"grafana": {"image": "grafana/grafana", "logging": {"driver": "loki"}}}}
        _script_model(runner, model)
        runner.script("docker", ["plugin", "ls"], stdout="loki:latest\n")
        run = run_validate(configured_workspace)
        assert_run_succeeded(run)
        assert run.result_for("logging-driver-check").detail == {"services": ["grafana"]}

    def test_low_resources_are_advisory(self, configured_workspace, monkeypatch):
        _write_env(configured_workspace)
        monkeypatch.setattr(preflight, "total_memory_bytes", lambda: 2 * preflight.GIB)
        monkeypatch.setattr(preflight, "free_disk_bytes", lambda path: 10 * preflight.GIB)
        run = run_validate(configured_workspace)
        assert_run_succeeded(run)
        step = run.result_for("resource-check")
        assert step.message == "memory 2.0 GB, free disk 10.0 GB (2 warning(s))"
        assert len(step.detail["warnings"]) == 2

    def test_unrelated_uuid_beside_cloudflared(self, configured_workspace, configured_settings):
        _write_env(configured_workspace)
        path = configured_settings.tunnel_compose_path
        path.write_text(
            path.read_text(encoding="utf-8")
            + "  portainer:\n    image: portainer/agent\n"
            + "    environment:\n      - AGENT_SECRET_ID=11111111-2222-4333-8444-555555555555\n",
            encoding="utf-8",
        )
        run = run_validate(configured_workspace)
        assert_run_succeeded(run)
        assert run.result_for("tunnel-config-check").detail == {"tunnel_id": TUNNEL_ID}

    def test_world_readable_env_is_reported(self, configured_workspace, configured_settings):
        _write_env(configured_workspace)
        configured_settings.env_path.chmod(0o644)
        run = run_validate(configured_workspace)
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        step = run.result_for("security-posture-check")
        assert any("env-permissions" in e for e in step.errors)
        assert f"chmod 600 {configured_settings.env_path}" in step.remediation


class TestBackup:
    def test_unencrypted_backup(self, workspace, settings):
        run = run_backup(workspace, encrypt=False)
        assert_run_succeeded(run)
        assert_steps(run, ["create-archive", "verify-archive", "prune-old-backups"])
        archive = settings.backup_path / run.result_for("create-archive").detail["path"].split("/")[-1]
        assert archive.is_file()
        assert archive.name.startswith("homelab_backup_")

    def test_encrypted_backup_with_remote(self, workspace, settings, runner, monkeypatch):
        def fake_openssl(command, args=(), timeout=..., **kwargs):
            result = type(runner).run(runner, command, args, timeout, **kwargs)
            if command == "openssl" and "-d" not in args:
                out = args[list(args).index("-out") + 1]
                with open(out, "wb") as fh:
                    fh.write(b"Salted__")
            return result

        monkeypatch.setattr(runner, "run", fake_openssl)
        run = run_backup(workspace, remote="proton:homelab-backups/")

        assert_run_succeeded(run)
        assert_steps(
            run,
            ["create-archive", "encrypt-archive", "verify-archive", "upload-archive", "prune-old-backups"],
        )
        encrypted = run.result_for("encrypt-archive").detail["path"]
        assert encrypted.endswith(".tar.gz.enc")
        assert runner.called("openssl", "enc", "-d", "-aes-256-cbc")
        assert runner.called("rclone", "copy", encrypted, "proton:homelab-backups/")
        assert stat.S_IMODE(settings.backup_password_path.stat().st_mode) == 0o600

    def test_upload_failure_is_not_fatal(self, workspace, runner):
        runner.script("rclone", ["copy"], exit_code=1, stderr="didn't find section in config file")
        run = run_backup(workspace, encrypt=False, remote="proton:x")
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert not run.result_for("upload-archive").success
        assert run.result_for("prune-old-backups").success

    def test_unreadable_file_is_a_config_error(self, workspace, settings, monkeypatch):
        def add(self, name, arcname=None, recursive=True, *, filter=None):
            raise PermissionError(13, "Permission denied", str(settings.project_root / "docker" / "locked"))

        monkeypatch.setattr(tarfile.TarFile, "add", add)
        run = run_backup(workspace, encrypt=False)

        assert_run_failed_at(run, "create-archive", ErrorKind.INVALID_CONFIG)
        assert run.exit_code == ExitCode.CONFIG_ERROR
        assert run.result_for("create-archive").remediation
        assert not list(settings.backup_path.glob("homelab_backup_*"))


class TestRollback:
    def test_rollback_restores_and_restarts(self, workspace, runner):
        runner.script("git", ["rev-parse", "--verify"], stdout="a1b2c3d4e5f6a7b8c9d0\n")
        runner.script("git", ["diff", "--name-only"], stdout="docker/docker-compose.yml\n")
        run = run_rollback(workspace)

        assert_run_succeeded(run)
        assert_steps(run, ["check-last-good", "restore-compose-files", "start-containers", "health-check-all"])
        assert run.result_for("check-last-good").detail["commit"] == "a1b2c3d4e5f6a7b8c9d0"
        assert run.result_for("restore-compose-files").detail["files"] == ["docker/docker-compose.yml"]
        assert runner.called("git", "checkout", "last-good", "--", "docker")

    def test_no_tag(self, workspace, runner):
        runner.script("git", ["rev-parse", "--verify"], exit_code=1)
        run = run_rollback(workspace, tag="release-1")
        assert_run_failed_at(run, "check-last-good", ErrorKind.INVALID_CONFIG)
        assert "release-1" in run.result_for("check-last-good").message
        assert not runner.called("git", "checkout")

    def test_not_a_repository(self, workspace, runner):
        runner.script("git", ["rev-parse", "--is-inside-work-tree"], exit_code=128, stderr="not a git repository")
        run = run_rollback(workspace)
        assert_run_failed_at(run, "check-last-good", ErrorKind.INVALID_CONFIG)
