from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from grove.cli import cli
from grove.errors import ConflictError, UnpushedCommitsError
from grove.models import ArchivedWorktree, WorktreeMetadata, WorktreeStatus
from grove.services.archive import SweepResult


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_env(tmp_path, monkeypatch):
    """Swap in a mocked manager so no git or background threads run."""
    project = tmp_path / "repo"
    project.mkdir()
    manager = MagicMock()
    monkeypatch.setattr("grove.cli._manager", lambda *a, **kw: manager)
    monkeypatch.setattr("grove.cli.setup_logging", lambda *a, **kw: None)
    return manager, project


def _wt(**overrides) -> WorktreeMetadata:
    fields = dict(id="p-feature-1234", project_id="p", branch_name="feature", worktree_path="/repo/.grove/worktrees/feature")
    fields.update(overrides)
    return WorktreeMetadata(**fields)


def test_list_shows_worktrees(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.list.return_value = [
        _wt(status=WorktreeStatus(dirty=True, ahead=1, behind=0, current_branch="feature")),
    ]

    result = runner.invoke(cli, ["list", "-C", str(project)])

    assert result.exit_code == 0
    assert "feature [↑1 ↓0] *" in result.output
    assert "p-feature-1234" in result.output
    assert "Just now" in result.output


def test_list_flags_drift_and_missing(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.list.return_value = [
        _wt(status=WorktreeStatus(current_branch="main")),
        _wt(id="p-gone", branch_name="gone", worktree_path="/x", is_stale=True),
    ]

    result = runner.invoke(cli, ["list", "-C", str(project)])

    assert "(on main)" in result.output
    assert "(missing)" in result.output


def test_list_empty(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.list.return_value = []

    result = runner.invoke(cli, ["list", "-C", str(project)])

    assert result.exit_code == 0
    assert "No worktrees." in result.output


def test_create(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.create.return_value = _wt()

    result = runner.invoke(cli, ["create", "feature", "-C", str(project), "--copy", "node_modules/"])

    assert result.exit_code == 0
    assert "Created worktree" in result.output
    args = manager.worktrees.create.call_args
    assert args.args[2] == "feature"
    assert args.args[3] == ["node_modules/"]


def test_create_warns_about_sensitive_copy(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.create.return_value = _wt()

    result = runner.invoke(cli, ["create", "feature", "-C", str(project), "--copy", ".env"])

    assert result.exit_code == 0
    assert "sensitive" in result.output


def test_create_conflict_fails(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.create.side_effect = ConflictError("Branch 'main' is already checked out")

    result = runner.invoke(cli, ["create", "main", "-C", str(project)])

    assert result.exit_code == 1
    assert "BRANCH_ALREADY_CHECKED_OUT" in result.output


def test_delete_with_unpushed_commits_suggests_force(runner, mock_env):
    manager, project = mock_env
    manager.worktrees.delete.side_effect = UnpushedCommitsError("feature", 2)

    result = runner.invoke(cli, ["delete", "p-feature-1234", "-D", "-C", str(project)])

    assert result.exit_code == 1
    assert "--force" in result.output


def test_archive_and_restore(runner, mock_env):
    manager, project = mock_env
    manager.archives.archive.return_value = ArchivedWorktree(
        id="p-feature-1234", project_id="p", branch_name="feature",
        original_path="/repo/.grove/worktrees/feature", archive_path="/repo/.grove/archives/feature-1",
        unpushed_commits=True, commit_count=3,
    )
    manager.archives.restore.return_value = _wt()

    archived = runner.invoke(cli, ["archive", "p-feature-1234", "-C", str(project)])
    restored = runner.invoke(cli, ["restore", "p-feature-1234", "-C", str(project)])

    assert archived.exit_code == 0
    assert "unpushed commits (3 unique)" in archived.output
    assert restored.exit_code == 0
    assert "Restored worktree" in restored.output


def test_archives_delete_requires_yes_for_unpushed(runner, mock_env):
    manager, project = mock_env
    manager.archives.delete_archive.side_effect = UnpushedCommitsError("feature", 1)

    result = runner.invoke(cli, ["archives", "--delete", "a1", "-C", str(project)])

    assert result.exit_code == 1
    assert "--yes" in result.output
    manager.archives.delete_archive.assert_called_once_with("a1", confirm_unpushed=False)


def test_sweep_lists_archives_needing_confirmation(runner, mock_env):
    manager, project = mock_env
    manager.archives.sweep_expired.return_value = SweepResult(deleted=["a"], needs_confirmation=["b"])

    result = runner.invoke(cli, ["sweep", "-C", str(project)])

    assert result.exit_code == 0
    assert "Deleted 1 expired archive(s)." in result.output
    assert "grove archives --delete b --yes" in result.output


def test_patterns_groups_by_category(runner, mock_env):
    _, project = mock_env
    (project / ".gitignore").write_text("node_modules/\n.env\n")

    result = runner.invoke(cli, ["patterns", "-C", str(project)])

    assert result.exit_code == 0
    assert "[dependencies]" in result.output
    assert ".env (sensitive)" in result.output


def test_profiles_save_and_list(runner, mock_env):
    _, project = mock_env

    saved = runner.invoke(cli, ["profiles", "save", "frontend", "node_modules/", "dist/", "-C", str(project)])
    listed = runner.invoke(cli, ["profiles", "list", "-C", str(project)])

    assert saved.exit_code == 0
    assert "frontend: node_modules/, dist/" in listed.output


class TestConfigCommand:
    @pytest.fixture(autouse=True)
    def _redirect_state_dir(self, tmp_path, monkeypatch):
        state_dir = tmp_path / "grove-state"
        state_dir.mkdir()
        monkeypatch.setattr("grove.config.STATE_DIR", state_dir)

    def test_show(self, runner, mock_env):
        _, project = mock_env
        result = runner.invoke(cli, ["config", "-C", str(project)])
        assert result.exit_code == 0
        assert "[archive]" in result.output
        assert "retention_days   = 30" in result.output

    def test_set_and_get(self, runner, mock_env):
        _, project = mock_env
        result = runner.invoke(cli, ["config", "archive.retention_days", "14", "-C", str(project)])
        assert result.exit_code == 0
        assert "retention_days = 14" in (project / ".grove.toml").read_text()

        result = runner.invoke(cli, ["config", "archive.retention_days", "-C", str(project)])
        assert result.output.strip() == "14"

    @pytest.mark.parametrize("key", ["nodots", "bogus.field", "archive.bogus"])
    def test_unknown_key(self, runner, mock_env, key):
        _, project = mock_env
        result = runner.invoke(cli, ["config", key, "-C", str(project)])
        assert result.exit_code == 1

    def test_invalid_value(self, runner, mock_env):
        _, project = mock_env
        result = runner.invoke(cli, ["config", "poller.max_workers", "lots", "-C", str(project)])
        assert result.exit_code == 1
        assert "Invalid value" in result.output
