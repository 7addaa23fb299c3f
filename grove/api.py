"""Request/response surface for UI callers.

Every call returns a plain dict: `{"success": True, "data": ...}` on success,
`{"success": False, "error": message, "code": code}` on failure. Nothing
raises across this boundary.
"""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from grove.errors import GroveError, NotFoundError
from grove.manager import WorktreeManager
from grove.services import gitignore
from grove.services.profiles import GitignoreProfileStore

logger = logging.getLogger(__name__)


def _ok(data: Any = None) -> dict[str, Any]:
    return {"success": True, "data": data}


def _fail(error: GroveError) -> dict[str, Any]:
    return {"success": False, "error": error.message, "code": error.code}


class WorktreeApi:
    def __init__(self, manager: WorktreeManager) -> None:
        self.manager = manager

    def _call(self, name: str, fn: Callable[[], Any]) -> dict[str, Any]:
        try:
            return _ok(fn())
        except GroveError as e:
            logger.debug("Request failed", extra={"call": name, "code": e.code})
            return _fail(e)
        except Exception as e:
            logger.exception("Unexpected error handling request", extra={"call": name})
            return {"success": False, "error": str(e), "code": "UNKNOWN_ERROR"}

    def dispatch(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route `{"command": "worktree.create", ...}` style requests."""
        command = request.get("command")
        args = {k: v for k, v in request.items() if k != "command"}
        match command:
            case None:
                return {"success": False, "error": "Missing command", "code": "VALIDATION_ERROR"}
            case "worktree.create":
                handler = self.create
            case "worktree.list":
                handler = self.list_worktrees
            case "worktree.status":
                handler = self.status
            case "worktree.archive":
                handler = self.archive
            case "worktree.restore":
                handler = self.restore
            case "worktree.delete":
                handler = self.delete
            case "worktree.list-archived":
                handler = self.list_archived
            case "worktree.delete-archive":
                handler = self.delete_archive
            case "worktree.cleanup-archives":
                handler = self.sweep
            case "gitignore.parse":
                handler = self.parse_gitignore
            case _:
                return {"success": False, "error": f"Unknown command: {command}", "code": "VALIDATION_ERROR"}
        try:
            return handler(**args)
        except TypeError as e:
            return {"success": False, "error": f"Bad arguments for {command}: {e}", "code": "VALIDATION_ERROR"}

    # -- worktrees ---------------------------------------------------------

    def create(
        self,
        project_id: str,
        project_path: str,
        branch_name: str,
        gitignore_selections: list[str] | None = None,
        profile: str | None = None,
    ) -> dict[str, Any]:
        def _create() -> dict[str, str]:
            record = self.manager.worktrees.create(
                project_id, project_path, branch_name, gitignore_selections, profile=profile
            )
            return {"id": record.id}

        return self._call("worktree.create", _create)

    def list_worktrees(self, project_id: str) -> dict[str, Any]:
        return self._call(
            "worktree.list",
            lambda: [wt.model_dump() for wt in self.manager.worktrees.list(project_id)],
        )

    def status(self, worktree_id: str) -> dict[str, Any]:
        return self._call("worktree.status", lambda: self.manager.worktrees.status(worktree_id).model_dump())

    def archive(self, worktree_id: str) -> dict[str, Any]:
        return self._call("worktree.archive", lambda: self.manager.archives.archive(worktree_id).model_dump())

    def restore(self, archive_id: str) -> dict[str, Any]:
        return self._call("worktree.restore", lambda: self.manager.archives.restore(archive_id).model_dump())

    def delete(self, worktree_id: str, delete_branch: bool = False, force: bool = False) -> dict[str, Any]:
        return self._call(
            "worktree.delete",
            lambda: self.manager.worktrees.delete(worktree_id, delete_branch=delete_branch, force=force),
        )

    # -- archives ----------------------------------------------------------

    def list_archived(self, project_id: str) -> dict[str, Any]:
        return self._call(
            "worktree.list-archived",
            lambda: [a.model_dump() for a in self.manager.archives.list_archived(project_id)],
        )

    def delete_archive(self, archive_id: str, confirm_unpushed: bool = False) -> dict[str, Any]:
        return self._call(
            "worktree.delete-archive",
            lambda: self.manager.archives.delete_archive(archive_id, confirm_unpushed=confirm_unpushed),
        )

    def sweep(self, project_id: str | None = None) -> dict[str, Any]:
        def _sweep() -> dict[str, list[str]]:
            result = self.manager.archives.sweep_expired(project_id)
            return {
                "deleted": result.deleted,
                "needs_confirmation": result.needs_confirmation,
                "failed": result.failed,
            }

        return self._call("worktree.cleanup-archives", _sweep)

    # -- gitignore ---------------------------------------------------------

    def parse_gitignore(self, project_root: str) -> dict[str, Any]:
        def _parse() -> list[dict[str, Any]]:
            root = Path(project_root)
            if not root.is_dir():
                raise NotFoundError(f"Project path does not exist: {root}", code="PROJECT_NOT_FOUND")
            return [p.model_dump(mode="json") for p in gitignore.load_gitignore(root / ".gitignore")]

        return self._call("gitignore.parse", _parse)

    def list_profiles(self, project_root: str) -> dict[str, Any]:
        return self._call(
            "gitignore.list-profiles",
            lambda: [p.model_dump() for p in GitignoreProfileStore(project_root).list()],
        )

    def save_profile(self, project_root: str, name: str, patterns: list[str]) -> dict[str, Any]:
        return self._call(
            "gitignore.save-profile",
            lambda: GitignoreProfileStore(project_root).save(name, patterns).model_dump(),
        )
