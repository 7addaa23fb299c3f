"""Named, reusable .gitignore pattern selections stored per project."""

import fcntl
import json
import logging
import os
from pathlib import Path

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from grove.constants import PROFILES_DIR_NAME, PROFILES_FILE_NAME
from grove.errors import ConflictError, GroveError, NotFoundError, ValidationError
from grove.models import GitignoreProfile
from grove.services.store import control_dir

logger = logging.getLogger(__name__)

_PROFILES = TypeAdapter(list[GitignoreProfile])


class GitignoreProfileStore:
    def __init__(self, project_path: Path | str) -> None:
        self.path = control_dir(project_path) / PROFILES_DIR_NAME / PROFILES_FILE_NAME

    def _load(self) -> list[GitignoreProfile]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return _PROFILES.validate_python(data.get("profiles", []))
        except (json.JSONDecodeError, AttributeError, PydanticValidationError) as e:
            raise GroveError(f"Corrupt profiles file at {self.path}: {e}", code="STORE_CORRUPT") from e

    def _save(self, profiles: list[GitignoreProfile]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        payload = {"profiles": [p.model_dump() for p in profiles]}
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _locked(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path.with_suffix(".lock"), "a")

    def get(self, name: str) -> GitignoreProfile:
        for profile in self._load():
            if profile.name == name:
                return profile
        raise NotFoundError(f"Profile '{name}' not found", code="PROFILE_NOT_FOUND")

    def save(self, name: str, patterns: list[str]) -> GitignoreProfile:
        if not name.strip():
            raise ValidationError("Profile name must not be empty")
        with self._locked() as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                profiles = self._load()
                if any(p.name == name for p in profiles):
                    raise ConflictError(f"Profile '{name}' already exists", code="PROFILE_EXISTS")
                profile = GitignoreProfile(name=name, patterns=list(patterns))
                profiles.append(profile)
                self._save(profiles)
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)
        logger.info("Saved gitignore profile", extra={"profile": name, "patterns": len(patterns)})
        return profile

    def update(self, name: str, patterns: list[str]) -> GitignoreProfile:
        with self._locked() as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                profiles = self._load()
                for profile in profiles:
                    if profile.name == name:
                        profile.patterns = list(patterns)
                        self._save(profiles)
                        return profile
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)
        raise NotFoundError(f"Profile '{name}' not found", code="PROFILE_NOT_FOUND")

    def delete(self, name: str) -> None:
        with self._locked() as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                profiles = self._load()
                remaining = [p for p in profiles if p.name != name]
                if len(remaining) == len(profiles):
                    raise NotFoundError(f"Profile '{name}' not found", code="PROFILE_NOT_FOUND")
                self._save(remaining)
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

    def list(self) -> list[GitignoreProfile]:
        return self._load()
