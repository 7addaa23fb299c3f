"""Configuration loading with auto-detection fallbacks.

Reads `.grove.toml` (project-level) and `~/.config/grove/config.toml` (global),
merges them, and fills missing values with defaults or git auto-detection.
"""

import os
import tomllib
from pathlib import Path

import git as gitpython
from pydantic import BaseModel

from grove.constants import (
    MUTATE_TIMEOUT_S,
    PERSISTENT_FAILURE_THRESHOLD,
    POLL_INTERVAL_S,
    PROJECT_CONFIG_NAME,
    RETENTION_DAYS,
    STATE_DIR,
    STATUS_TIMEOUT_S,
    SWEEP_INTERVAL_S,
)

_SECTIONS = ("poller", "timeouts", "archive", "git")


class PollerConfig(BaseModel):
    interval_s: float = 0.0
    max_workers: int = 0
    persistent_failure_threshold: int = 0


class TimeoutsConfig(BaseModel):
    status_s: int = 0
    mutate_s: int = 0


class ArchiveConfig(BaseModel):
    retention_days: int = 0
    sweep_interval_s: float = 0.0


class GitConfig(BaseModel):
    remote: str = ""


class GroveConfig(BaseModel):
    poller: PollerConfig = PollerConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    archive: ArchiveConfig = ArchiveConfig()
    git: GitConfig = GitConfig()


class ResolvedConfig(BaseModel):
    """Flat config with all values guaranteed filled."""

    poll_interval_s: float = POLL_INTERVAL_S
    max_workers: int = 4
    persistent_failure_threshold: int = PERSISTENT_FAILURE_THRESHOLD
    status_timeout_s: int = STATUS_TIMEOUT_S
    mutate_timeout_s: int = MUTATE_TIMEOUT_S
    retention_days: int = RETENTION_DAYS
    sweep_interval_s: float = SWEEP_INTERVAL_S
    remote: str = "origin"
    state_dir: Path = STATE_DIR


def default_worker_count() -> int:
    return max(1, min(os.cpu_count() or 1, 8))


def detect_remote(cwd: Path | str | None = None) -> str:
    try:
        repo = gitpython.Repo(cwd or ".", search_parent_directories=True)
        remotes = [r.name for r in repo.remotes]
        if not remotes:
            return "origin"
        return "origin" if "origin" in remotes else remotes[0]
    except (gitpython.InvalidGitRepositoryError, gitpython.NoSuchPathError):
        return "origin"


def save_project_config(project_root: Path, config: GroveConfig) -> Path:
    """Save project-level .grove.toml. Returns the path written."""
    path = project_root / PROJECT_CONFIG_NAME
    lines: list[str] = []
    for section_name in _SECTIONS:
        section = getattr(config, section_name)
        section_lines: list[str] = []
        for field_name, field_info in type(section).model_fields.items():
            value = getattr(section, field_name)
            if value != field_info.default:
                section_lines.append(f"{field_name} = {_toml_value(value)}")
        if section_lines:
            lines.append(f"[{section_name}]")
            lines.extend(section_lines)
            lines.append("")
    path.write_text("\n".join(lines) + "\n" if lines else "")
    return path


def _toml_value(value: object) -> str:
    """Format a Python value as TOML."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        items = ", ".join(f'"{_escape_toml_str(v)}"' for v in value)
        return f"[{items}]"
    if isinstance(value, str):
        return f'"{_escape_toml_str(value)}"'
    return str(value)


def _escape_toml_str(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"')


def load_toml(path: Path) -> GroveConfig:
    if not path.exists():
        return GroveConfig()
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return GroveConfig.model_validate(data)


def _merge_configs(project: GroveConfig, global_: GroveConfig) -> GroveConfig:
    """Merge project over global. Non-default project values win."""
    merged = GroveConfig()
    for section in _SECTIONS:
        proj_section = getattr(project, section)
        glob_section = getattr(global_, section)
        merged_section = getattr(merged, section)
        for field_name, field_info in type(proj_section).model_fields.items():
            proj_val = getattr(proj_section, field_name)
            glob_val = getattr(glob_section, field_name)
            if proj_val != field_info.default:
                setattr(merged_section, field_name, proj_val)
            elif glob_val != field_info.default:
                setattr(merged_section, field_name, glob_val)
    return merged


def load_config(project_path: Path | str | None = None) -> ResolvedConfig:
    """Load and resolve configuration with defaults for every unset value.

    Args:
        project_path: Optional project root whose `.grove.toml` overrides the
            global file. If None, only the global file is read.
    """
    global_cfg = load_toml(STATE_DIR / "config.toml")
    project_cfg = GroveConfig()
    if project_path is not None:
        project_cfg = load_toml(Path(project_path) / PROJECT_CONFIG_NAME)
    merged = _merge_configs(project_cfg, global_cfg)

    return ResolvedConfig(
        poll_interval_s=merged.poller.interval_s or POLL_INTERVAL_S,
        max_workers=merged.poller.max_workers or default_worker_count(),
        persistent_failure_threshold=(
            merged.poller.persistent_failure_threshold or PERSISTENT_FAILURE_THRESHOLD
        ),
        status_timeout_s=merged.timeouts.status_s or STATUS_TIMEOUT_S,
        mutate_timeout_s=merged.timeouts.mutate_s or MUTATE_TIMEOUT_S,
        retention_days=merged.archive.retention_days or RETENTION_DAYS,
        sweep_interval_s=merged.archive.sweep_interval_s or SWEEP_INTERVAL_S,
        remote=merged.git.remote or (detect_remote(project_path) if project_path else "origin"),
        state_dir=STATE_DIR,
    )
