"""Soft delete: archive worktrees, restore them, and reclaim expired archives.

Archiving moves the directory before the metadata swap. A crash in between
leaves the active record with `archive_pending` set; `recover()` moves the
directory back so the worktree is active again, never orphaned.
"""

import logging
import shutil
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from grove.constants import ARCHIVES_DIR_NAME, RETENTION_DAYS
from grove.errors import ConflictError, GitCommandError, GroveError, NotFoundError, UnpushedCommitsError
from grove.models import ArchivedWorktree, WorktreeMetadata, utc_now
from grove.services import events
from grove.services.events import EventBus
from grove.services.git import GitRunner
from grove.services.locks import KeyedLocks
from grove.services.poller import compute_status
from grove.services.store import WorktreeStore, control_dir
from grove.services.worktree import sanitize_branch_name

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    deleted: list[str] = field(default_factory=list)
    needs_confirmation: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def archive_path_for(project_path: Path | str, branch_name: str, when: datetime) -> Path:
    stamp = when.strftime("%Y%m%dT%H%M%S")
    name = f"{sanitize_branch_name(branch_name)}-{stamp}-{uuid.uuid4().hex[:4]}"
    return control_dir(project_path) / ARCHIVES_DIR_NAME / name


class ArchiveManager:
    def __init__(
        self,
        store: WorktreeStore,
        runner: GitRunner,
        bus: EventBus | None = None,
        locks: KeyedLocks | None = None,
        retention_days: int = RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.runner = runner
        self.bus = bus or EventBus()
        self.locks = locks or KeyedLocks()
        self.retention_days = retention_days
        self.clock = clock

    def list_archived(self, project_id: str) -> list[ArchivedWorktree]:
        return self.store.list_archived(project_id)

    def archive(self, worktree_id: str) -> ArchivedWorktree:
        with self.locks.hold(worktree_id):
            record = self.store.get_active(worktree_id)
            project_path = self.store.project_path(record.project_id)
            src = Path(record.worktree_path)
            if not src.exists():
                raise NotFoundError(f"Worktree directory is missing: {src}", code="WORKTREE_PATH_MISSING")

            unpushed = self.runner.unpushed_commit_count(project_path, record.branch_name)
            commit_count = self.runner.unique_commit_count(project_path, record.branch_name)

            now = self.clock()
            dest = archive_path_for(project_path, record.branch_name, now)
            dest.parent.mkdir(parents=True, exist_ok=True)

            self._set_pending(worktree_id, str(dest))
            try:
                shutil.move(str(src), str(dest))
            except OSError as e:
                self._restore_dir(dest, src)
                self._set_pending(worktree_id, None)
                raise GitCommandError("move", message=f"Failed to move {src} to archive: {e}") from e

            archived = ArchivedWorktree(
                id=record.id,
                project_id=record.project_id,
                branch_name=record.branch_name,
                original_path=str(src),
                archive_path=str(dest),
                archived_at=now.isoformat(),
                expires_at=(now + timedelta(days=self.retention_days)).isoformat(),
                unpushed_commits=unpushed > 0,
                commit_count=commit_count,
                created_at=record.created_at,
                gitignore_profile=record.gitignore_profile,
            )
            try:
                self.store.move_to_archive(archived)
            except BaseException:
                self._restore_dir(dest, src)
                self._set_pending(worktree_id, None)
                raise

            try:
                self.runner.worktree_prune(project_path)
            except GitCommandError:
                logger.warning(
                    "Archived but git registration not pruned yet", extra={"worktree_id": worktree_id}, exc_info=True
                )

        logger.info(
            "Archived worktree",
            extra={"worktree_id": worktree_id, "archive_path": str(dest), "unpushed": unpushed, "commits": commit_count},
        )
        self.bus.publish(events.WORKTREE_ARCHIVED, worktree_id, archive_path=str(dest), unpushed_commits=unpushed > 0)
        return archived

    def _set_pending(self, worktree_id: str, value: str | None) -> None:
        def _mark(record: WorktreeMetadata) -> None:
            record.archive_pending = value

        self.store.modify_active(worktree_id, _mark)

    def _restore_dir(self, moved_to: Path, original: Path) -> None:
        if moved_to.exists() and not original.exists():
            try:
                shutil.move(str(moved_to), str(original))
            except OSError:
                logger.warning(
                    "Could not move archive back; run recover()",
                    extra={"from": str(moved_to), "to": str(original)},
                    exc_info=True,
                )

    def restore(self, archive_id: str) -> WorktreeMetadata:
        with self.locks.hold(archive_id):
            archived = self.store.get_archived(archive_id)
            archive_dir = Path(archived.archive_path)
            if not archive_dir.exists():
                raise NotFoundError(f"Archive directory no longer exists: {archive_dir}", code="ARCHIVE_NOT_FOUND")

            project_path = self.store.project_path(archived.project_id)
            target = Path(archived.original_path)
            index = self.store.read(archived.project_id)
            if index.find_by_branch(archived.branch_name) is not None:
                raise ConflictError(f"Branch '{archived.branch_name}' already has an active worktree")
            if index.find_by_path(str(target)) is not None or target.exists():
                raise ConflictError(f"Original path is in use: {target}", code="PATH_EXISTS")

            self.runner.worktree_prune(project_path)
            checked_out = self.runner.branch_checked_out_at(project_path, archived.branch_name)
            if checked_out is not None:
                raise ConflictError(f"Branch '{archived.branch_name}' is already checked out at {checked_out}")
            if not self.runner.branch_exists(project_path, archived.branch_name):
                raise NotFoundError(f"Branch '{archived.branch_name}' no longer exists", code="BRANCH_NOT_FOUND")

            target.parent.mkdir(parents=True, exist_ok=True)
            self.runner.worktree_add(project_path, target, archived.branch_name, no_checkout=True)
            moved: list[str] = []
            try:
                self.runner.reset_index(target)
                try:
                    for entry in sorted(archive_dir.iterdir()):
                        if entry.name == ".git":
                            continue
                        shutil.move(str(entry), str(target / entry.name))
                        moved.append(entry.name)
                except OSError as e:
                    raise GitCommandError("move", message=f"Failed to restore files from {archive_dir}: {e}") from e

                polled_at = time.time_ns()
                status = compute_status(self.runner, target)
                now = self.clock().isoformat()
                record = WorktreeMetadata(
                    id=archived.id,
                    project_id=archived.project_id,
                    branch_name=archived.branch_name,
                    worktree_path=str(target),
                    created_at=archived.created_at or now,
                    last_accessed_at=now,
                    gitignore_profile=archived.gitignore_profile,
                    status=status,
                    status_polled_at=polled_at,
                )
                self.store.move_to_active(record)
            except BaseException:
                self._rollback_restore(project_path, archive_dir, target, moved)
                raise

            try:
                shutil.rmtree(archive_dir)
            except OSError:
                logger.warning("Restored but archive leftovers remain", extra={"path": str(archive_dir)}, exc_info=True)

        logger.info("Restored worktree", extra={"worktree_id": archive_id, "path": str(target)})
        self.bus.publish(events.WORKTREE_RESTORED, archive_id, path=str(target))
        return record

    def _rollback_restore(self, project_path: Path, archive_dir: Path, target: Path, moved: list[str]) -> None:
        for name in reversed(moved):
            try:
                shutil.move(str(target / name), str(archive_dir / name))
            except OSError:
                logger.warning("Rollback: could not return file to archive", extra={"name": name}, exc_info=True)
        try:
            self.runner.worktree_remove(project_path, target, force=True)
        except GitCommandError:
            logger.warning("Rollback: git worktree remove failed", extra={"path": str(target)}, exc_info=True)
        if target.exists() and not any(p.name != ".git" for p in target.iterdir()):
            shutil.rmtree(target, ignore_errors=True)

    def delete_archive(self, archive_id: str, confirm_unpushed: bool = False) -> None:
        """Permanently delete one archive.

        Archives holding unpushed commits need `confirm_unpushed=True`.
        """
        with self.locks.hold(archive_id):
            archived = self.store.get_archived(archive_id)
            if archived.unpushed_commits and not confirm_unpushed:
                raise UnpushedCommitsError(archived.branch_name, archived.commit_count)
            self._purge(archived, events.ARCHIVE_DELETED)

    def _purge(self, archived: ArchivedWorktree, event: str) -> None:
        archive_dir = Path(archived.archive_path)
        if archive_dir.exists():
            try:
                shutil.rmtree(archive_dir)
            except OSError as e:
                raise GitCommandError("rm", message=f"Failed to delete archive {archive_dir}: {e}") from e
        self.store.remove_archived(archived.id)
        logger.info("Deleted archive", extra={"worktree_id": archived.id, "path": str(archive_dir)})
        self.bus.publish(event, archived.id, path=str(archive_dir))

    def sweep_expired(self, project_id: str | None = None) -> SweepResult:
        """Delete expired archives; surface expired ones with unpushed commits instead."""
        now = self.clock()
        result = SweepResult()
        project_ids = [project_id] if project_id else list(self.store.projects())
        for pid in project_ids:
            try:
                archives = self.store.list_archived(pid)
            except GroveError:
                logger.warning("Cannot read archives for sweep", extra={"project_id": pid}, exc_info=True)
                continue
            for archived in archives:
                if not archived.is_expired(now):
                    continue
                if archived.unpushed_commits:
                    self._flag_for_confirmation(archived)
                    result.needs_confirmation.append(archived.id)
                    continue
                try:
                    with self.locks.hold(archived.id):
                        self._purge(archived, events.ARCHIVE_EXPIRED)
                    result.deleted.append(archived.id)
                except GroveError:
                    logger.warning("Could not delete expired archive", extra={"worktree_id": archived.id}, exc_info=True)
                    result.failed.append(archived.id)
        if result.deleted or result.needs_confirmation:
            logger.info(
                "Archive sweep finished",
                extra={"deleted": len(result.deleted), "needs_confirmation": len(result.needs_confirmation)},
            )
        return result

    def _flag_for_confirmation(self, archived: ArchivedWorktree) -> None:
        if not archived.needs_confirmation:

            def _flag(record: ArchivedWorktree) -> None:
                record.needs_confirmation = True

            self.store.modify_archived(archived.id, _flag)
            logger.warning(
                "Expired archive has unpushed commits; waiting for confirmation",
                extra={"worktree_id": archived.id, "branch": archived.branch_name, "commits": archived.commit_count},
            )
        self.bus.publish(
            events.ARCHIVE_NEEDS_CONFIRMATION,
            archived.id,
            branch=archived.branch_name,
            commit_count=archived.commit_count,
        )

    def recover(self, project_id: str | None = None) -> list[str]:
        """Roll interrupted archives back to active. Returns the recovered ids."""
        recovered = []
        project_ids = [project_id] if project_id else list(self.store.projects())
        for pid in project_ids:
            for record in self.store.list_active(pid):
                if not record.archive_pending:
                    continue
                with self.locks.hold(record.id):
                    self._restore_dir(Path(record.archive_pending), Path(record.worktree_path))
                    self._set_pending(record.id, None)
                logger.warning("Rolled back interrupted archive", extra={"worktree_id": record.id})
                recovered.append(record.id)
        return recovered
