import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path

from grove.constants import (
    CONTROL_DIR_NAME,
    MAX_SLUG_LENGTH,
    MINIMUM_GIT_VERSION,
    RESERVED_REF_NAMES,
    WORKTREES_DIR_NAME,
)
from grove.errors import (
    ConflictError,
    GitCommandError,
    GroveError,
    NotFoundError,
    PathGoneError,
    UnpushedCommitsError,
    ValidationError,
)
from grove.models import WorktreeMetadata, WorktreeStatus
from grove.services import events
from grove.services.events import EventBus
from grove.services.git import GitRunner
from grove.services.gitignore import iter_matches, parse_project
from grove.services.locks import KeyedLocks
from grove.services.poller import StatusPoller, compute_status
from grove.services.profiles import GitignoreProfileStore
from grove.services.store import WorktreeStore, control_dir

logger = logging.getLogger(__name__)

_FORBIDDEN_REF_CHARS = re.compile(r"[~^:\\?*\[\s\x00-\x1f\x7f]")
_CHECKED_OUT_MARKERS = ("is already checked out", "is already used by worktree", "already exists")


def validate_branch_name(name: str) -> None:
    """Reject names git would refuse as a branch ref. Raises ValidationError."""
    if not name or not name.strip():
        raise ValidationError("Branch name must not be empty")
    if name in RESERVED_REF_NAMES:
        raise ValidationError(f"'{name}' is a reserved name")
    if ".." in name:
        raise ValidationError(f"Branch name '{name}' must not contain '..'")
    match = _FORBIDDEN_REF_CHARS.search(name)
    if match:
        raise ValidationError(f"Branch name '{name}' contains forbidden character {match.group()!r}")
    if name.startswith("/") or name.endswith("/") or "//" in name:
        raise ValidationError(f"Branch name '{name}' has a leading, trailing or doubled '/'")
    if "@{" in name:
        raise ValidationError(f"Branch name '{name}' must not contain '@{{'")
    if name.startswith("-"):
        raise ValidationError(f"Branch name '{name}' must not start with '-'")
    if name.endswith("."):
        raise ValidationError(f"Branch name '{name}' must not end with '.'")
    for component in name.split("/"):
        if component.startswith("."):
            raise ValidationError(f"Branch name component '{component}' must not start with '.'")
        if component.endswith(".lock"):
            raise ValidationError(f"Branch name component '{component}' must not end with '.lock'")


def sanitize_branch_name(name: str) -> str:
    """Folder-safe slug for a branch (feature/auth -> feature-auth)."""
    slug = re.sub(r"[^A-Za-z0-9_-]", "-", name)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-") or "worktree"


def worktree_path_for(project_path: Path | str, branch_name: str) -> Path:
    return control_dir(project_path) / WORKTREES_DIR_NAME / sanitize_branch_name(branch_name)


def new_worktree_id(project_id: str, branch_name: str) -> str:
    return f"{project_id}-{sanitize_branch_name(branch_name)}-{uuid.uuid4().hex[:8]}"


def _is_checked_out_error(error: GitCommandError) -> bool:
    return any(marker in error.stderr for marker in _CHECKED_OUT_MARKERS)


def _add_git_excludes(runner: GitRunner, project_path: Path, names: list[str]) -> None:
    """Add entries to the shared git exclude file (works for worktrees)."""
    try:
        common_dir = runner.run(project_path, "rev-parse", "--git-common-dir", timeout=runner.status_timeout).strip()
    except GitCommandError:
        return

    git_common = Path(common_dir)
    if not git_common.is_absolute():
        git_common = (project_path / git_common).resolve()

    exclude_dir = git_common / "info"
    exclude_dir.mkdir(parents=True, exist_ok=True)
    exclude_file = exclude_dir / "exclude"

    existing = set()
    if exclude_file.exists():
        existing = set(exclude_file.read_text().splitlines())

    new_entries = [n for n in names if n not in existing]
    if new_entries:
        with open(exclude_file, "a") as f:
            for entry in new_entries:
                f.write(f"{entry}\n")


def copy_selected(source: Path, dest: Path, selections: list[str]) -> list[str]:
    """Copy ignored files matching `selections` from source into dest.

    Only selections present in the source's .gitignore are honored; unknown
    patterns are ignored. Existing paths in dest are never overwritten.
    Returns the copied relative paths.
    """
    known = {p.pattern for p in parse_project(source)}
    chosen = [s for s in selections if s in known]
    unknown = [s for s in selections if s not in known]
    if unknown:
        logger.debug("Ignoring selections not in .gitignore", extra={"patterns": unknown})

    copied: list[str] = []
    for rel, is_dir in iter_matches(source, chosen, skip=(".git", CONTROL_DIR_NAME)):
        src = source / rel
        dst = dest / rel
        if dst.exists() or dst.is_symlink():
            continue
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.is_symlink():
            os.symlink(os.readlink(src), dst)
        elif is_dir:
            shutil.copytree(src, dst, symlinks=True)
        else:
            shutil.copy2(src, dst)
        copied.append(rel)
    return copied


class WorktreeService:
    """Creates, lists and hard-deletes worktrees."""

    def __init__(
        self,
        store: WorktreeStore,
        runner: GitRunner,
        bus: EventBus | None = None,
        locks: KeyedLocks | None = None,
        poller: StatusPoller | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.bus = bus or EventBus()
        self.locks = locks or KeyedLocks()
        self.poller = poller
        self._version_ok = False

    def check_git_version(self) -> tuple[int, int, int]:
        version = self.runner.version()
        if version < MINIMUM_GIT_VERSION:
            wanted = ".".join(map(str, MINIMUM_GIT_VERSION))
            found = ".".join(map(str, version))
            raise GitCommandError(
                "version",
                message=f"Git version {found} is too old. Please upgrade to {wanted} or higher.",
                code="GIT_VERSION_TOO_OLD",
            )
        self._version_ok = True
        return version

    def create(
        self,
        project_id: str,
        project_path: Path | str,
        branch_name: str,
        gitignore_selections: list[str] | None = None,
        profile: str | None = None,
    ) -> WorktreeMetadata:
        """Create a worktree for `branch_name`, all-or-nothing.

        Raises ValidationError for bad names, ConflictError when the branch or
        path is in use, GitCommandError for any other git or filesystem failure.
        """
        validate_branch_name(branch_name)
        project_path = Path(project_path).expanduser().resolve()
        if not project_path.is_dir():
            raise NotFoundError(f"Project path does not exist: {project_path}", code="PROJECT_NOT_FOUND")
        selections = list(gitignore_selections or [])
        if profile is not None:
            selections = GitignoreProfileStore(project_path).get(profile).patterns
        if not self._version_ok:
            self.check_git_version()

        self.store.register_project(project_id, project_path)
        wt_path = worktree_path_for(project_path, branch_name)

        with self.locks.hold(f"{project_id}:branch:{branch_name}", f"{project_id}:path:{wt_path}"):
            index = self.store.read(project_id)
            other = index.find_by_branch(branch_name)
            if other is not None:
                raise ConflictError(f"Branch '{branch_name}' already has worktree {other.id}")
            if index.find_by_path(str(wt_path)) is not None or wt_path.exists():
                raise ConflictError(f"Worktree path already exists: {wt_path}", code="PATH_EXISTS")
            checked_out = self.runner.branch_checked_out_at(project_path, branch_name)
            if checked_out is not None:
                raise ConflictError(f"Branch '{branch_name}' is already checked out at {checked_out}")

            created_branch = not self.runner.branch_exists(project_path, branch_name)
            _add_git_excludes(self.runner, project_path, [f"/{CONTROL_DIR_NAME}/"])
            wt_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self.runner.worktree_add(project_path, wt_path, branch_name, create_branch=created_branch)
            except GitCommandError as e:
                # a branch that appeared after the existence check belongs to someone else
                ours = created_branch and "already exists" not in e.stderr
                self._rollback_create(project_path, wt_path, branch_name, ours, registered=False)
                if _is_checked_out_error(e):
                    raise ConflictError(f"Branch '{branch_name}' is already checked out: {e.stderr}") from e
                raise

            try:
                try:
                    copied = copy_selected(project_path, wt_path, selections)
                except OSError as e:
                    raise GitCommandError("copy", message=f"Failed to copy ignored files: {e}") from e
                polled_at = time.time_ns()
                status = compute_status(self.runner, wt_path)
                record = WorktreeMetadata(
                    id=new_worktree_id(project_id, branch_name),
                    project_id=project_id,
                    branch_name=branch_name,
                    worktree_path=str(wt_path),
                    gitignore_profile=profile or ("custom" if selections else None),
                    status=status,
                    status_polled_at=polled_at,
                )
                self.store.add_active(record)
            except BaseException:
                self._rollback_create(project_path, wt_path, branch_name, created_branch, registered=True)
                raise

        logger.info(
            "Created worktree",
            extra={"worktree_id": record.id, "branch": branch_name, "path": str(wt_path), "copied": len(copied)},
        )
        self.bus.publish(events.WORKTREE_CREATED, record.id, branch=branch_name, path=str(wt_path))
        return record

    def _rollback_create(
        self, project_path: Path, wt_path: Path, branch: str, created_branch: bool, registered: bool
    ) -> None:
        if registered:
            try:
                self.runner.worktree_remove(project_path, wt_path, force=True)
            except GitCommandError:
                logger.warning("Rollback: git worktree remove failed", extra={"path": str(wt_path)}, exc_info=True)
        if wt_path.exists():
            shutil.rmtree(wt_path, ignore_errors=True)
        try:
            self.runner.worktree_prune(project_path)
        except GitCommandError:
            logger.warning("Rollback: git worktree prune failed", extra={"path": str(wt_path)}, exc_info=True)
        if created_branch and self.runner.branch_exists(project_path, branch):
            try:
                self.runner.delete_branch(project_path, branch)
            except GitCommandError:
                logger.warning("Rollback: could not delete new branch", extra={"branch": branch}, exc_info=True)

    def list(self, project_id: str) -> list[WorktreeMetadata]:
        return self.store.list_active(project_id)

    def get(self, worktree_id: str) -> WorktreeMetadata:
        return self.store.get_active(worktree_id)

    def touch(self, worktree_id: str) -> WorktreeMetadata:
        """Mark the worktree as the active selection."""
        return self.store.touch(worktree_id)

    def status(self, worktree_id: str) -> WorktreeStatus:
        """Refresh status on demand and return the stored result.

        Raises `PathGoneError` when the worktree directory is missing; the
        record is flagged stale either way.
        """
        if self.poller is not None:
            self.poller.poll_now(worktree_id)
        else:
            record = self.store.get_active(worktree_id)
            polled_at = time.time_ns()
            with self.locks.hold(worktree_id):
                try:
                    status = compute_status(self.runner, record.worktree_path)
                except PathGoneError:
                    if not record.is_stale:
                        self.store.mark_stale(worktree_id)
                        self.bus.publish(events.WORKTREE_STALE, worktree_id, path=record.worktree_path)
                else:
                    self.store.update_status(worktree_id, status, polled_at)
        record = self.store.get_active(worktree_id)
        if record.is_stale:
            raise PathGoneError(f"Worktree directory is missing: {record.worktree_path}")
        return record.status

    def delete(self, worktree_id: str, delete_branch: bool = False, force: bool = False) -> None:
        """Hard delete: registration, directory and record.

        With `delete_branch`, refuses to drop a branch holding unpushed commits
        unless `force` is set.
        """
        with self.locks.hold(worktree_id):
            record = self.store.get_active(worktree_id)
            project_path = self.store.project_path(record.project_id)
            wt_path = Path(record.worktree_path)

            if delete_branch and not force:
                unpushed = self.runner.unpushed_commit_count(project_path, record.branch_name)
                if unpushed:
                    raise UnpushedCommitsError(record.branch_name, unpushed)

            try:
                self.runner.worktree_remove(project_path, wt_path, force=True)
            except GitCommandError:
                logger.debug("git worktree remove failed, cleaning up manually", extra={"path": str(wt_path)}, exc_info=True)
                if wt_path.exists():
                    try:
                        shutil.rmtree(wt_path)
                    except OSError as e:
                        raise GitCommandError("rm", message=f"Failed to delete {wt_path}: {e}") from e
                self.runner.worktree_prune(project_path)

            self.store.remove_active(worktree_id)
            if self.poller is not None:
                self.poller.forget(worktree_id)
            logger.info("Deleted worktree", extra={"worktree_id": worktree_id, "path": str(wt_path)})
            self.bus.publish(events.WORKTREE_DELETED, worktree_id, path=str(wt_path))

            if delete_branch:
                try:
                    self.runner.delete_branch(project_path, record.branch_name)
                except GroveError:
                    logger.warning("Worktree deleted but branch was kept", extra={"branch": record.branch_name})
                    raise
