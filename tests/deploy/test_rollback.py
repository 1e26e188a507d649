"""Tests for sol_deploy.deploy.rollback."""

import pytest

from sol_deploy.core.errors import ConfigError, ExternalCommandError
from sol_deploy.deploy.rollback import GitRepository
from sol_deploy.testing import ScriptedRunner

COMMIT = "0123456789abcdef0123456789abcdef01234567"


@pytest.fixture
def git_runner(tmp_path):
    runner = ScriptedRunner(tmp_path)
    runner.script("git", ["rev-parse", "--verify"], stdout=f"{COMMIT}\n")
    return runner


def test_tag_moves_tag_to_head(tmp_path, git_runner):
    repo = GitRepository(git_runner, tmp_path)
    assert repo.tag() == COMMIT
    [call] = git_runner.called("git", "tag")
    assert call.args == ("tag", "-f", "last-good", "HEAD")
    assert call.cwd == tmp_path


def test_tag_outside_repository(tmp_path, git_runner):
    git_runner.script("git", ["rev-parse", "--is-inside-work-tree"], exit_code=128)
    with pytest.raises(ConfigError):
        GitRepository(git_runner, tmp_path).tag()
    assert not git_runner.called("git", "tag")


def test_resolve_missing_ref(tmp_path):
    runner = ScriptedRunner(tmp_path)
    runner.script("git", ["rev-parse", "--verify"], exit_code=1)
    assert GitRepository(runner, tmp_path).resolve("nope") is None


def test_resolve_peels_to_commit(tmp_path, git_runner):
    GitRepository(git_runner, tmp_path).resolve("last-good")
    assert git_runner.called("git", "rev-parse", "--verify", "--quiet", "last-good^{commit}")


def test_require_tag_remediation(tmp_path):
    runner = ScriptedRunner(tmp_path)
    runner.script("git", ["rev-parse", "--verify"], exit_code=1)
    with pytest.raises(ConfigError) as exc_info:
        GitRepository(runner, tmp_path).require_tag()
    assert "mark-good" in exc_info.value.remediation


def test_checkout_paths(tmp_path, git_runner):
    git_runner.script("git", ["diff", "--name-only"], stdout="docker/a.yml\ndocker/b.yml\n")
    changed = GitRepository(git_runner, tmp_path).checkout_paths("last-good", "docker")
    assert changed == ["docker/a.yml", "docker/b.yml"]
    assert git_runner.called("git", "checkout", "last-good", "--", "docker")


def test_checkout_failure(tmp_path, git_runner):
    git_runner.script("git", ["diff"], exit_code=128)
    git_runner.script("git", ["checkout"], exit_code=1, stderr="pathspec 'docker' did not match")
    repo = GitRepository(git_runner, tmp_path)
    assert repo.changed_paths("last-good", "docker") == []
    with pytest.raises(ExternalCommandError) as exc_info:
        repo.checkout_paths("last-good", "docker")
    assert "git diff last-good -- docker" in exc_info.value.remediation
