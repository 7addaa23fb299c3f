"""Durable per-project metadata for active and archived worktrees.

Each project keeps one JSON document at `<project>/.grove/worktrees.json`
holding both indices. Writes go to a temp file that is renamed over the
document, so readers always see a complete version and never take a lock.
Writers are serialized per project by a thread lock plus an fcntl lock
shared with other processes.
"""

import fcntl
import hashlib
import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from pydantic import ValidationError as PydanticValidationError

from grove.constants import CONTROL_DIR_NAME, INDEX_FILE_NAME, STATE_DIR
from grove.errors import ConflictError, GroveError, NotFoundError
from grove.models import ArchivedWorktree, ProjectIndex, WorktreeMetadata, WorktreeStatus, utc_now
from grove.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

T = TypeVar("T")


def project_id_for(project_path: Path | str) -> str:
    """Stable short id for a project derived from its absolute path."""
    resolved = str(Path(project_path).expanduser().resolve())
    return hashlib.sha256(resolved.encode()).hexdigest()[:12]


def control_dir(project_path: Path | str) -> Path:
    return Path(project_path) / CONTROL_DIR_NAME


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class WorktreeStore:
    def __init__(self, state_dir: Path | str = STATE_DIR) -> None:
        self.state_dir = Path(state_dir)
        self._project_locks = KeyedLocks()
        self._registry_lock = threading.Lock()
        self._id_cache: dict[str, str] = {}

    # -- project registry --------------------------------------------------

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "projects.json"

    def _load_registry(self) -> dict[str, str]:
        if not self.registry_path.exists():
            return {}
        try:
            data = json.loads(self.registry_path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Projects registry unreadable, treating as empty", extra={"path": str(self.registry_path)})
            return {}
        return data if isinstance(data, dict) else {}

    def projects(self) -> dict[str, str]:
        return self._load_registry()

    def register_project(self, project_id: str, project_path: Path | str) -> None:
        """Track a project so ids can be resolved without knowing its path."""
        path_str = str(Path(project_path).resolve())
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_file = self.registry_path.with_suffix(".lock")
        with self._registry_lock, open(lock_file, "a") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                projects = self._load_registry()
                known = projects.get(project_id)
                if known == path_str:
                    return
                if known is not None and Path(known).exists():
                    raise ConflictError(
                        f"Project id '{project_id}' is already registered for {known}", code="PROJECT_CONFLICT"
                    )
                projects[project_id] = path_str
                _atomic_write(self.registry_path, json.dumps(projects, indent=2))
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

    def project_path(self, project_id: str) -> Path:
        path = self._load_registry().get(project_id)
        if path is None:
            raise NotFoundError(f"Unknown project: {project_id}", code="PROJECT_NOT_FOUND")
        return Path(path)

    # -- documents ---------------------------------------------------------

    def index_path(self, project_id: str) -> Path:
        return control_dir(self.project_path(project_id)) / INDEX_FILE_NAME

    def read(self, project_id: str) -> ProjectIndex:
        """Snapshot of a project's document. Mutating it has no effect on disk."""
        project_path = self.project_path(project_id)
        path = control_dir(project_path) / INDEX_FILE_NAME
        if not path.exists():
            return ProjectIndex(project_id=project_id, project_path=str(project_path))
        try:
            return ProjectIndex.model_validate_json(path.read_text(encoding="utf-8"))
        except (PydanticValidationError, ValueError) as e:
            raise GroveError(f"Corrupt worktree index at {path}: {e}", code="STORE_CORRUPT") from e

    def update(self, project_id: str, mutate: Callable[[ProjectIndex], T]) -> T:
        """Apply `mutate` to a fresh copy of the document and persist it atomically.

        If `mutate` raises, nothing is written and the error propagates.
        """
        path = self.index_path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = path.with_suffix(".lock")
        with self._project_locks.hold(project_id), open(lock_file, "a") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                index = self.read(project_id)
                result = mutate(index)
                _atomic_write(path, index.model_dump_json(indent=2))
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)
        for wt_id in index.active:
            self._id_cache[wt_id] = project_id
        for wt_id in index.archived:
            self._id_cache[wt_id] = project_id
        return result

    # -- lookups -----------------------------------------------------------

    def locate(self, worktree_id: str) -> str:
        """Return the project id owning `worktree_id` in either index."""
        cached = self._id_cache.get(worktree_id)
        if cached is not None:
            try:
                index = self.read(cached)
            except NotFoundError:
                index = None
            if index is not None and (worktree_id in index.active or worktree_id in index.archived):
                return cached
        for project_id in self.projects():
            try:
                index = self.read(project_id)
            except GroveError:
                logger.debug("Skipping unreadable project index", extra={"project_id": project_id}, exc_info=True)
                continue
            if worktree_id in index.active or worktree_id in index.archived:
                self._id_cache[worktree_id] = project_id
                return project_id
        raise NotFoundError(f"Worktree not found: {worktree_id}")

    def list_active(self, project_id: str) -> list[WorktreeMetadata]:
        return sorted(self.read(project_id).active.values(), key=lambda wt: wt.created_at)

    def list_archived(self, project_id: str) -> list[ArchivedWorktree]:
        return sorted(self.read(project_id).archived.values(), key=lambda a: a.archived_at)

    def get_active(self, worktree_id: str) -> WorktreeMetadata:
        index = self.read(self.locate(worktree_id))
        wt = index.active.get(worktree_id)
        if wt is None:
            raise NotFoundError(f"Worktree is not active: {worktree_id}")
        return wt

    def get_archived(self, archive_id: str) -> ArchivedWorktree:
        try:
            index = self.read(self.locate(archive_id))
        except NotFoundError:
            raise NotFoundError(f"Archive not found: {archive_id}", code="ARCHIVE_NOT_FOUND")
        archived = index.archived.get(archive_id)
        if archived is None:
            raise NotFoundError(f"Archive not found: {archive_id}", code="ARCHIVE_NOT_FOUND")
        return archived

    # -- mutations ---------------------------------------------------------

    def add_active(self, record: WorktreeMetadata) -> WorktreeMetadata:
        def _add(index: ProjectIndex) -> WorktreeMetadata:
            if record.id in index.active or record.id in index.archived:
                raise ConflictError(f"Worktree id already exists: {record.id}", code="ID_EXISTS")
            other = index.find_by_branch(record.branch_name)
            if other is not None:
                raise ConflictError(f"Branch '{record.branch_name}' already has worktree {other.id}")
            if index.find_by_path(record.worktree_path) is not None:
                raise ConflictError(f"Path already in use: {record.worktree_path}", code="PATH_EXISTS")
            index.active[record.id] = record
            return record

        return self.update(record.project_id, _add)

    def remove_active(self, worktree_id: str) -> WorktreeMetadata:
        def _remove(index: ProjectIndex) -> WorktreeMetadata:
            record = index.active.pop(worktree_id, None)
            if record is None:
                raise NotFoundError(f"Worktree is not active: {worktree_id}")
            return record

        removed = self.update(self.locate(worktree_id), _remove)
        self._id_cache.pop(worktree_id, None)
        return removed

    def remove_archived(self, archive_id: str) -> ArchivedWorktree:
        def _remove(index: ProjectIndex) -> ArchivedWorktree:
            record = index.archived.pop(archive_id, None)
            if record is None:
                raise NotFoundError(f"Archive not found: {archive_id}", code="ARCHIVE_NOT_FOUND")
            return record

        removed = self.update(self.get_archived(archive_id).project_id, _remove)
        self._id_cache.pop(archive_id, None)
        return removed

    def move_to_archive(self, archived: ArchivedWorktree) -> ArchivedWorktree:
        """Swap an active record for its archive record in one write."""

        def _move(index: ProjectIndex) -> ArchivedWorktree:
            if archived.id not in index.active:
                raise NotFoundError(f"Worktree is not active: {archived.id}")
            if archived.id in index.archived:
                raise ConflictError(f"Worktree is already archived: {archived.id}", code="ID_EXISTS")
            del index.active[archived.id]
            index.archived[archived.id] = archived
            return archived

        return self.update(archived.project_id, _move)

    def move_to_active(self, record: WorktreeMetadata) -> WorktreeMetadata:
        """Swap an archive record for a restored active record in one write."""

        def _move(index: ProjectIndex) -> WorktreeMetadata:
            if record.id not in index.archived:
                raise NotFoundError(f"Archive not found: {record.id}", code="ARCHIVE_NOT_FOUND")
            if index.find_by_branch(record.branch_name) is not None:
                raise ConflictError(f"Branch '{record.branch_name}' already has an active worktree")
            if index.find_by_path(record.worktree_path) is not None:
                raise ConflictError(f"Path already in use: {record.worktree_path}", code="PATH_EXISTS")
            del index.archived[record.id]
            index.active[record.id] = record
            return record

        return self.update(record.project_id, _move)

    def modify_active(self, worktree_id: str, change: Callable[[WorktreeMetadata], WorktreeMetadata | None]) -> WorktreeMetadata:
        def _modify(index: ProjectIndex) -> WorktreeMetadata:
            record = index.active.get(worktree_id)
            if record is None:
                raise NotFoundError(f"Worktree is not active: {worktree_id}")
            updated = change(record) or record
            index.active[worktree_id] = updated
            return updated

        return self.update(self.locate(worktree_id), _modify)

    def modify_archived(self, archive_id: str, change: Callable[[ArchivedWorktree], None]) -> ArchivedWorktree:
        def _modify(index: ProjectIndex) -> ArchivedWorktree:
            record = index.archived.get(archive_id)
            if record is None:
                raise NotFoundError(f"Archive not found: {archive_id}", code="ARCHIVE_NOT_FOUND")
            change(record)
            return record

        return self.update(self.get_archived(archive_id).project_id, _modify)

    def update_status(self, worktree_id: str, status: WorktreeStatus, polled_at: int) -> bool:
        """Replace `status` if this poll is newer than the stored one.

        Returns False when the result was stale and discarded. Other fields
        are untouched.
        """
        applied = False

        def _apply(record: WorktreeMetadata) -> None:
            nonlocal applied
            if polled_at <= record.status_polled_at:
                return
            record.status = status
            record.status_polled_at = polled_at
            record.is_stale = False
            applied = True

        self.modify_active(worktree_id, _apply)
        return applied

    def touch(self, worktree_id: str) -> WorktreeMetadata:
        def _touch(record: WorktreeMetadata) -> None:
            record.last_accessed_at = utc_now().isoformat()

        return self.modify_active(worktree_id, _touch)

    def mark_stale(self, worktree_id: str) -> WorktreeMetadata:
        def _mark(record: WorktreeMetadata) -> None:
            record.is_stale = True

        return self.modify_active(worktree_id, _mark)
