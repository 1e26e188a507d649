"""Tests for sol_deploy.deploy.layout."""

import stat

import pytest

from sol_deploy.core.errors import ConfigError, ErrorKind
from sol_deploy.core.settings import DEFAULT_DATA_DIRS
from sol_deploy.deploy.layout import OPEN_MODE, prepare_directories


def _mode(path):
    return stat.S_IMODE(path.stat().st_mode)


def test_creates_nested_directories(tmp_path):
    report = prepare_directories(tmp_path, ["adguard/work", "grafana/data"])
    assert report.created == ["adguard/work", "grafana/data"]
    assert (tmp_path / "adguard" / "work").is_dir()
    assert report.changed


def test_second_run_changes_nothing(tmp_path):
    prepare_directories(tmp_path, DEFAULT_DATA_DIRS, ["cloudflared"])
    report = prepare_directories(tmp_path, DEFAULT_DATA_DIRS, ["cloudflared"])
    assert not report.changed
    assert report.created == []
    assert report.chmodded == []


def test_open_dirs_are_made_traversable(tmp_path):
    (tmp_path / "cloudflared").mkdir(mode=0o700)
    (tmp_path / "cloudflared").chmod(0o700)
    report = prepare_directories(tmp_path, [], ["cloudflared"])
    assert report.chmodded == ["cloudflared"]
    assert report.created == []
    assert _mode(tmp_path / "cloudflared") == OPEN_MODE


def test_open_dir_is_created_when_missing(tmp_path):
    report = prepare_directories(tmp_path, ["cloudflared"], ["cloudflared"])
    assert report.created == ["cloudflared"]
    assert _mode(tmp_path / "cloudflared") == OPEN_MODE


def test_file_in_the_way(tmp_path):
    (tmp_path / "n8n").write_text("", encoding="utf-8")
    with pytest.raises(ConfigError) as exc_info:
        prepare_directories(tmp_path, ["n8n"])
    err = exc_info.value
    assert err.kind == ErrorKind.INVALID_CONFIG
    assert err.context.path == str(tmp_path / "n8n")
    assert "Move" in err.remediation


def test_parent_is_a_file(tmp_path):
    (tmp_path / "loki").write_text("", encoding="utf-8")
    with pytest.raises(ConfigError) as exc_info:
        prepare_directories(tmp_path, ["loki/data"])
    assert exc_info.value.problems
    assert "chown" in exc_info.value.remediation


@pytest.mark.parametrize("relative", ["../outside", "/etc/cloudflared"])
def test_paths_must_stay_below_base(tmp_path, relative):
    base = tmp_path / "docker"
    base.mkdir()
    with pytest.raises(ConfigError) as exc_info:
        prepare_directories(base, [relative])
    assert "escapes" in exc_info.value.message
    assert not (tmp_path / "outside").exists()
