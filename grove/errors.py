"""Error taxonomy for worktree operations.

Every error carries a stable ``code`` so request/response callers can map it
without string matching on messages.
"""


class GroveError(Exception):
    """Base class for all grove errors."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(GroveError):
    """Bad input detected before any git or filesystem work."""

    code = "VALIDATION_ERROR"


class ConflictError(GroveError):
    """The branch or path is already in use by another worktree."""

    code = "BRANCH_ALREADY_CHECKED_OUT"


class UnpushedCommitsError(ConflictError):
    """Refusing to drop a branch that holds commits no remote has."""

    code = "UNPUSHED_COMMITS_WARNING"

    def __init__(self, branch: str, count: int) -> None:
        self.branch = branch
        self.count = count
        super().__init__(f"Branch '{branch}' has {count} unpushed commit(s)")


class NotFoundError(GroveError):
    """Operating on an id or path that does not exist."""

    code = "WORKTREE_NOT_FOUND"


class PatternParseError(GroveError):
    """A .gitignore could not be read. Callers degrade to an empty catalog."""

    code = "PATTERN_PARSE_FAILED"


class GitCommandError(GroveError):
    """A git subprocess exited non-zero or produced unparseable output."""

    code = "GIT_OPERATION_FAILED"

    def __init__(
        self,
        command: list[str] | str,
        exit_code: int | None = None,
        stderr: str = "",
        message: str | None = None,
        code: str | None = None,
    ) -> None:
        self.command = command if isinstance(command, str) else " ".join(command)
        self.exit_code = exit_code
        self.stderr = stderr
        if message is None:
            message = f"git command '{self.command}' failed"
            if exit_code is not None:
                message += f" (exit {exit_code})"
            if stderr:
                message += f": {stderr.strip()}"
        super().__init__(message, code=code)


class GitTimeoutError(GitCommandError):
    """A git subprocess was killed after exceeding its timeout."""

    code = "GIT_TIMEOUT"


class PathGoneError(NotFoundError):
    """The worktree directory no longer exists on disk."""

    code = "WORKTREE_PATH_MISSING"
