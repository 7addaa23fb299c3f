"""Git subprocess runner and the parsers for its output.

Every git invocation in grove goes through `GitRunner`. Output formats are
parsed here and nowhere else, so format drift is a single point of change.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import git as gitpython

from grove.constants import MUTATE_TIMEOUT_S, STATUS_TIMEOUT_S
from grove.errors import GitCommandError, GitTimeoutError, PathGoneError

logger = logging.getLogger(__name__)

# Markers git leaves in the git dir while a merge-like operation is unresolved
_IN_PROGRESS_MARKERS = ("MERGE_HEAD", "rebase-merge", "rebase-apply", "CHERRY_PICK_HEAD", "REVERT_HEAD")


@dataclass(frozen=True)
class StatusSnapshot:
    head: str
    upstream: str | None
    ahead: int
    behind: int
    dirty: bool
    unmerged: bool


@dataclass(frozen=True)
class WorktreeEntry:
    path: str
    head: str = ""
    branch: str = ""
    detached: bool = False
    bare: bool = False
    prunable: bool = False


def parse_version(output: str) -> tuple[int, int, int]:
    """Parse `git version 2.43.0` (and vendor suffixes like `.windows.1`)."""
    words = output.strip().split()
    if len(words) < 3 or words[0] != "git" or words[1] != "version":
        raise GitCommandError("version", message=f"Unrecognized git version output: {output!r}")
    parts: list[int] = []
    for piece in words[2].split(".")[:3]:
        digits = ""
        for ch in piece:
            if not ch.isdigit():
                break
            digits += ch
        if not digits:
            break
        parts.append(int(digits))
    if not parts:
        raise GitCommandError("version", message=f"Unrecognized git version output: {output!r}")
    while len(parts) < 3:
        parts.append(0)
    return parts[0], parts[1], parts[2]


def parse_count(output: str, command: str = "rev-list") -> int:
    try:
        return max(0, int(output.strip()))
    except ValueError as e:
        raise GitCommandError(command, message=f"Expected a count, got {output!r}") from e


def parse_status_porcelain_v2(output: str) -> StatusSnapshot:
    """Parse `git status --porcelain=v2 --branch` output."""
    head = ""
    upstream: str | None = None
    ahead = behind = 0
    dirty = False
    unmerged = False
    for line in output.splitlines():
        if not line:
            continue
        if line.startswith("# branch.head "):
            head = line[len("# branch.head "):]
        elif line.startswith("# branch.upstream "):
            upstream = line[len("# branch.upstream "):]
        elif line.startswith("# branch.ab "):
            for token in line[len("# branch.ab "):].split():
                try:
                    value = abs(int(token))
                except ValueError:
                    raise GitCommandError("status", message=f"Malformed branch.ab line: {line!r}")
                if token.startswith("+"):
                    ahead = value
                elif token.startswith("-"):
                    behind = value
        elif line.startswith("#"):
            continue
        elif line[0] in "12?":
            dirty = True
        elif line[0] == "u":
            dirty = True
            unmerged = True
    if head == "(detached)":
        head = "HEAD"
    return StatusSnapshot(
        head=head,
        upstream=upstream,
        ahead=ahead if upstream else 0,
        behind=behind if upstream else 0,
        dirty=dirty,
        unmerged=unmerged,
    )


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse `git worktree list --porcelain` output into entries."""
    entries: list[WorktreeEntry] = []
    current: dict | None = None

    def flush() -> None:
        if current and current.get("path"):
            entries.append(WorktreeEntry(**current))

    for line in output.splitlines():
        if line.startswith("worktree "):
            flush()
            current = {"path": line[len("worktree "):]}
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            ref = line[len("branch "):]
            current["branch"] = ref.removeprefix("refs/heads/")
        elif line == "detached":
            current["detached"] = True
        elif line == "bare":
            current["bare"] = True
        elif line.startswith("prunable"):
            current["prunable"] = True
    flush()
    return entries


class GitRunner:
    """Thin wrapper over the git binary (through GitPython) with timeouts.

    Raises `GitCommandError` for non-zero exits, `GitTimeoutError` when a
    command is killed for exceeding its timeout, and `PathGoneError` when the
    working directory does not exist.
    """

    def __init__(
        self,
        status_timeout: int = STATUS_TIMEOUT_S,
        mutate_timeout: int = MUTATE_TIMEOUT_S,
        remote: str = "origin",
    ) -> None:
        self.status_timeout = status_timeout
        self.mutate_timeout = mutate_timeout
        self.remote = remote

    def run(self, cwd: Path | str | None, *args: str, timeout: int | None = None) -> str:
        timeout = timeout or self.mutate_timeout
        command = ["git", *args]
        if cwd is not None and not Path(cwd).exists():
            raise PathGoneError(f"Path does not exist: {cwd}")
        started = time.monotonic()
        try:
            g = gitpython.Git(str(cwd)) if cwd is not None else gitpython.Git()
            return g.execute(command, kill_after_timeout=timeout)
        except gitpython.GitCommandError as e:
            stderr = str(e.stderr or "").strip()
            status = e.status if isinstance(e.status, int) else None
            if time.monotonic() - started >= timeout or "Timeout:" in stderr:
                logger.debug("git command timed out", extra={"command": args[:2], "timeout": timeout})
                raise GitTimeoutError(command, status, stderr) from e
            raise GitCommandError(command, status, stderr) from e
        except gitpython.GitCommandNotFound as e:
            if cwd is not None and not Path(cwd).exists():
                raise PathGoneError(f"Path does not exist: {cwd}") from e
            raise GitCommandError(command, None, str(e)) from e

    def version(self) -> tuple[int, int, int]:
        return parse_version(self.run(None, "version", timeout=self.status_timeout))

    # -- queries -----------------------------------------------------------

    def toplevel(self, path: Path | str) -> str:
        return self.run(path, "rev-parse", "--show-toplevel", timeout=self.status_timeout).strip()

    def worktree_list(self, repo: Path | str) -> list[WorktreeEntry]:
        output = self.run(repo, "worktree", "list", "--porcelain", timeout=self.status_timeout)
        return parse_worktree_list(output)

    def branch_checked_out_at(self, repo: Path | str, branch: str) -> str | None:
        """Return the path of the worktree that has `branch` checked out, if any."""
        for entry in self.worktree_list(repo):
            if entry.branch == branch and not entry.prunable:
                return entry.path
        return None

    def branch_exists(self, repo: Path | str, branch: str) -> bool:
        try:
            self.run(repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", timeout=self.status_timeout)
            return True
        except GitCommandError as e:
            if isinstance(e, GitTimeoutError):
                raise
            return False

    def remotes(self, repo: Path | str) -> list[str]:
        output = self.run(repo, "remote", timeout=self.status_timeout)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def status(self, worktree: Path | str) -> StatusSnapshot:
        output = self.run(
            worktree, "status", "--porcelain=v2", "--branch", "--untracked-files=normal",
            timeout=self.status_timeout,
        )
        return parse_status_porcelain_v2(output)

    def operation_in_progress(self, worktree: Path | str) -> bool:
        git_dir = Path(self.run(worktree, "rev-parse", "--absolute-git-dir", timeout=self.status_timeout).strip())
        return any((git_dir / marker).exists() for marker in _IN_PROGRESS_MARKERS)

    def unique_commit_count(self, repo: Path | str, branch: str) -> int:
        """Commits on `branch` not reachable from any other branch or remote ref."""
        # --exclude patterns for --branches are relative to refs/heads/
        output = self.run(
            repo, "rev-list", "--count", f"refs/heads/{branch}", "--not",
            f"--exclude={branch}", "--branches", "--remotes",
            timeout=self.status_timeout,
        )
        return parse_count(output)

    def unpushed_commit_count(self, repo: Path | str, branch: str) -> int:
        """Commits on `branch` not present on the configured remote.

        Compares against every remote when the configured one is missing, and
        falls back to the commits unique to the branch without any remotes.
        """
        remotes = self.remotes(repo)
        if not remotes:
            return self.unique_commit_count(repo, branch)
        target = f"--remotes={self.remote}" if self.remote in remotes else "--remotes"
        output = self.run(
            repo, "rev-list", "--count", f"refs/heads/{branch}", "--not", target,
            timeout=self.status_timeout,
        )
        return parse_count(output)

    # -- mutations ---------------------------------------------------------

    def worktree_add(
        self,
        repo: Path | str,
        path: Path | str,
        branch: str,
        create_branch: bool = False,
        start_point: str | None = None,
        no_checkout: bool = False,
    ) -> None:
        args = ["worktree", "add"]
        if no_checkout:
            args.append("--no-checkout")
        if create_branch:
            args += ["-b", branch, str(path)]
            if start_point:
                args.append(start_point)
        else:
            args += [str(path), branch]
        self.run(repo, *args)

    def worktree_remove(self, repo: Path | str, path: Path | str, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self.run(repo, *args)

    def worktree_prune(self, repo: Path | str) -> None:
        self.run(repo, "worktree", "prune")

    def reset_index(self, worktree: Path | str) -> None:
        self.run(worktree, "reset", "--quiet", "--mixed")

    def delete_branch(self, repo: Path | str, branch: str) -> None:
        self.run(repo, "branch", "-D", branch)
