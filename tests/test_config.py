from unittest.mock import MagicMock

import git as gitpython
import pytest

from grove.config import (
    ArchiveConfig,
    GitConfig,
    GroveConfig,
    PollerConfig,
    TimeoutsConfig,
    _escape_toml_str,
    _merge_configs,
    _toml_value,
    default_worker_count,
    detect_remote,
    load_config,
    load_toml,
    save_project_config,
)


@pytest.fixture()
def _redirect_state_dir(tmp_path, monkeypatch):
    """Point the global config lookup at an empty temp directory."""
    state_dir = tmp_path / "grove-state"
    state_dir.mkdir()
    monkeypatch.setattr("grove.config.STATE_DIR", state_dir)
    return state_dir


@pytest.mark.parametrize("value,expected", [
    ("hello", '"hello"'),
    (True, "true"),
    (False, "false"),
    (42, "42"),
    (2.5, "2.5"),
    (["a", "b"], '["a", "b"]'),
])
def test_toml_value(value, expected):
    assert _toml_value(value) == expected


@pytest.mark.parametrize("value,expected", [
    ("a\\b", "a\\\\b"),
    ('say "hi"', 'say \\"hi\\"'),
    ("simple", "simple"),
])
def test_escape_toml_str(value, expected):
    assert _escape_toml_str(value) == expected


def test_default_worker_count_is_capped(monkeypatch):
    monkeypatch.setattr("grove.config.os.cpu_count", lambda: 64)
    assert default_worker_count() == 8
    monkeypatch.setattr("grove.config.os.cpu_count", lambda: None)
    assert default_worker_count() == 1


class TestDetectRemote:
    def test_returns_origin_when_present(self, monkeypatch):
        mock_repo = MagicMock()
        upstream = MagicMock()
        upstream.name = "upstream"
        origin = MagicMock()
        origin.name = "origin"
        mock_repo.remotes = [upstream, origin]
        monkeypatch.setattr(gitpython, "Repo", lambda *a, **kw: mock_repo)
        assert detect_remote() == "origin"

    def test_returns_first_remote_when_no_origin(self, monkeypatch):
        mock_repo = MagicMock()
        fork = MagicMock()
        fork.name = "fork"
        mock_repo.remotes = [fork]
        monkeypatch.setattr(gitpython, "Repo", lambda *a, **kw: mock_repo)
        assert detect_remote() == "fork"

    def test_not_a_repo(self, monkeypatch):
        monkeypatch.setattr(
            gitpython, "Repo",
            MagicMock(side_effect=gitpython.InvalidGitRepositoryError("not a repo")),
        )
        assert detect_remote("/tmp") == "origin"


class TestMergeConfigs:
    def test_project_overrides_global(self):
        project = GroveConfig(poller=PollerConfig(interval_s=5))
        global_ = GroveConfig(poller=PollerConfig(interval_s=30))
        merged = _merge_configs(project, global_)
        assert merged.poller.interval_s == 5

    def test_global_fills_missing(self):
        merged = _merge_configs(GroveConfig(), GroveConfig(git=GitConfig(remote="upstream")))
        assert merged.git.remote == "upstream"

    def test_multiple_sections(self):
        project = GroveConfig(archive=ArchiveConfig(retention_days=7))
        global_ = GroveConfig(timeouts=TimeoutsConfig(status_s=20), archive=ArchiveConfig(retention_days=60))
        merged = _merge_configs(project, global_)
        assert merged.archive.retention_days == 7
        assert merged.timeouts.status_s == 20
        assert merged.timeouts.mutate_s == 0


class TestLoadToml:
    def test_missing_file_returns_default(self, tmp_path):
        assert load_toml(tmp_path / "nonexistent.toml") == GroveConfig()

    def test_valid_toml(self, tmp_path):
        toml_file = tmp_path / "config.toml"
        toml_file.write_text("[archive]\nretention_days = 14\n")
        assert load_toml(toml_file).archive.retention_days == 14


class TestSaveProjectConfig:
    def test_round_trip(self, tmp_path):
        config = GroveConfig(poller=PollerConfig(interval_s=2.5, max_workers=3), git=GitConfig(remote="fork"))
        path = save_project_config(tmp_path, config)
        loaded = load_toml(path)
        assert loaded.poller.interval_s == 2.5
        assert loaded.poller.max_workers == 3
        assert loaded.git.remote == "fork"

    def test_empty_config_writes_minimal(self, tmp_path):
        path = save_project_config(tmp_path, GroveConfig())
        assert path.read_text().strip() == ""


@pytest.mark.usefixtures("_redirect_state_dir")
class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.setattr("grove.config.os.cpu_count", lambda: 4)
        cfg = load_config()
        assert cfg.poll_interval_s == 10.0
        assert cfg.max_workers == 4
        assert cfg.status_timeout_s == 10
        assert cfg.mutate_timeout_s == 120
        assert cfg.retention_days == 30
        assert cfg.remote == "origin"

    def test_project_toml_overrides_global(self, tmp_path, _redirect_state_dir):
        (_redirect_state_dir / "config.toml").write_text("[poller]\ninterval_s = 30\n[archive]\nretention_days = 60\n")
        project = tmp_path / "proj"
        project.mkdir()
        (project / ".grove.toml").write_text('[archive]\nretention_days = 7\n[git]\nremote = "fork"\n')

        cfg = load_config(project)

        assert cfg.poll_interval_s == 30
        assert cfg.retention_days == 7
        assert cfg.remote == "fork"
        assert cfg.state_dir == _redirect_state_dir
