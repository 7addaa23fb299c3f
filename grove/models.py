from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from grove.constants import RETENTION_DAYS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class PatternCategory(str, Enum):
    DEPENDENCIES = "dependencies"
    BUILD = "build"
    ENV = "env"
    CACHE = "cache"
    IDE = "ide"
    TEST = "test"
    OTHER = "other"


class ParsedPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: str
    category: PatternCategory
    is_security_sensitive: bool = False
    related_patterns: tuple[str, ...] = ()


class WorktreeStatus(BaseModel):
    """Result of one completed poll. Replaced wholesale, never patched."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    dirty: bool = False
    ahead: int = Field(default=0, ge=0)
    behind: int = Field(default=0, ge=0)
    conflicted: bool = False
    current_branch: str = ""


class WorktreeMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    branch_name: str
    worktree_path: str
    created_at: str = Field(default_factory=_now_iso)
    last_accessed_at: str = Field(default_factory=_now_iso)
    is_archived: bool = False
    gitignore_profile: str | None = None
    status: WorktreeStatus = Field(default_factory=WorktreeStatus)
    # time.time_ns() at the start of the poll that produced `status`
    status_polled_at: int = 0
    is_stale: bool = False
    # set while an archive is moving the directory; cleared by recover()
    archive_pending: str | None = None

    @property
    def branch_drifted(self) -> bool:
        current = self.status.current_branch
        return bool(current) and current != self.branch_name


class ArchivedWorktree(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    branch_name: str
    original_path: str
    archive_path: str
    archived_at: str = Field(default_factory=_now_iso)
    expires_at: str = ""
    unpushed_commits: bool = False
    commit_count: int = Field(default=0, ge=0)
    created_at: str | None = None
    gitignore_profile: str | None = None
    needs_confirmation: bool = False

    @model_validator(mode="after")
    def _fix_expiry(self) -> "ArchivedWorktree":
        if not self.expires_at:
            archived = parse_timestamp(self.archived_at)
            self.expires_at = (archived + timedelta(days=RETENTION_DAYS)).isoformat()
        return self

    def is_expired(self, now: datetime | None = None) -> bool:
        return parse_timestamp(self.expires_at) <= (now or utc_now())


class ProjectIndex(BaseModel):
    """Persisted per-project document holding both indices."""

    model_config = ConfigDict(extra="ignore")

    project_id: str
    project_path: str
    active: dict[str, WorktreeMetadata] = Field(default_factory=dict)
    archived: dict[str, ArchivedWorktree] = Field(default_factory=dict)

    def find_by_branch(self, branch: str) -> WorktreeMetadata | None:
        for wt in self.active.values():
            if wt.branch_name == branch:
                return wt
        return None

    def find_by_path(self, path: str) -> WorktreeMetadata | None:
        for wt in self.active.values():
            if wt.worktree_path == path:
                return wt
        return None


class GitignoreProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    patterns: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
