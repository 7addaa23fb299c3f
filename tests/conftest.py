import shutil
from pathlib import Path

import git as gitpython
import pytest

from grove.models import WorktreeMetadata
from grove.services.archive import ArchiveManager
from grove.services.events import EventBus
from grove.services.git import GitRunner
from grove.services.locks import KeyedLocks
from grove.services.store import WorktreeStore, project_id_for
from grove.services.worktree import WorktreeService


@pytest.fixture()
def store(tmp_path: Path) -> WorktreeStore:
    return WorktreeStore(tmp_path / "state")


@pytest.fixture()
def project(tmp_path: Path, store: WorktreeStore) -> tuple[str, Path]:
    """A registered (non-git) project directory."""
    root = tmp_path / "proj"
    root.mkdir()
    project_id = project_id_for(root)
    store.register_project(project_id, root)
    return project_id, root.resolve()


@pytest.fixture()
def make_record(project):
    project_id, root = project

    def _make(branch: str = "feature", **overrides) -> WorktreeMetadata:
        path = root / ".grove" / "worktrees" / branch.replace("/", "-")
        fields = dict(
            id=f"{project_id}-{branch.replace('/', '-')}",
            project_id=project_id,
            branch_name=branch,
            worktree_path=str(path),
        )
        fields.update(overrides)
        return WorktreeMetadata(**fields)

    return _make


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A real repository with one commit on `main` and a committed .gitignore."""
    if shutil.which("git") is None:
        pytest.skip("git binary not available")
    root = tmp_path / "repo"
    root.mkdir()
    repo = gitpython.Repo.init(root)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Test User")
        cw.set_value("user", "email", "test@example.com")
        cw.set_value("commit", "gpgsign", "false")
    (root / "README.md").write_text("hello\n")
    (root / ".gitignore").write_text("node_modules/\n.env\n*.log\n")
    repo.index.add(["README.md", ".gitignore"])
    repo.index.commit("initial")
    repo.git.branch("-M", "main")
    return root.resolve()


@pytest.fixture()
def services(tmp_path: Path):
    """Real store, runner and services sharing one lock table and bus."""
    store = WorktreeStore(tmp_path / "state")
    runner = GitRunner(status_timeout=30, mutate_timeout=60)
    bus = EventBus()
    locks = KeyedLocks()
    worktrees = WorktreeService(store, runner, bus=bus, locks=locks)
    archives = ArchiveManager(store, runner, bus=bus, locks=locks)
    return worktrees, archives, store, bus
