"""Parse a repository's .gitignore into categorized, security-flagged patterns.

Also matches paths against those patterns so a selection can be copied from
the source tree into a fresh worktree.
"""

import fnmatch
import logging
import os
import re
from collections.abc import Iterable, Iterator
from pathlib import Path

from grove.errors import PatternParseError
from grove.models import ParsedPattern, PatternCategory

logger = logging.getLogger(__name__)

GITIGNORE_NAME = ".gitignore"

# Checked in order; the first category with a matching rule wins
CATEGORY_RULES: dict[PatternCategory, tuple[str, ...]] = {
    PatternCategory.DEPENDENCIES: ("node_modules/", "vendor/", ".bundle/", "jspm_packages/", ".venv/", "venv/"),
    PatternCategory.BUILD: ("dist/", "build/", "out/", ".next/", ".nuxt/", "cache/", ".cache/", "target/"),
    PatternCategory.ENV: (".env", ".env.local", ".env.*.local", "*.pem", "*.key", "*.cert"),
    PatternCategory.CACHE: (".eslintcache", ".stylelintcache", "*.log", "__pycache__/", ".pytest_cache/"),
    PatternCategory.IDE: (".vscode/", ".idea/", "*.swp", "*.swo", ".DS_Store", "Thumbs.db"),
    PatternCategory.TEST: ("coverage/", ".nyc_output/", "test-results/", "htmlcov/"),
}

SECURITY_RULES = (
    ".env",
    ".env*",
    ".env.*",
    "*.env",
    "*.env.*",
    "*.pem",
    "*.key",
    "*.cert",
    "*.p12",
    "*.pfx",
    "id_rsa*",
    "id_ed25519*",
    "secrets.*",
    "*.secret",
    "credentials",
    "credentials.*",
    ".netrc",
)

RELATED_PATTERNS: dict[str, tuple[str, ...]] = {
    "node_modules/": ("package-lock.json", "yarn.lock", "pnpm-lock.yaml", ".eslintcache", "package.json"),
    "vendor/": ("composer.lock",),
    "dist/": ("build/", ".next/", "out/"),
    ".env": (".env.local", ".env.*.local"),
}


def _normalize(pattern: str) -> str:
    p = pattern
    while p.startswith("**/"):
        p = p[3:]
    return p.lstrip("/")


def categorize(pattern: str) -> PatternCategory:
    norm = _normalize(pattern)
    for category, rules in CATEGORY_RULES.items():
        for rule in rules:
            if norm == rule or fnmatch.fnmatchcase(norm, rule):
                return category
            if rule.endswith("/") and norm.rstrip("/") == rule.rstrip("/"):
                return category
            stem = rule.replace("*", "")
            if not rule.startswith("*") and stem and norm.startswith(stem):
                return category
    return PatternCategory.OTHER


def is_security_sensitive(pattern: str) -> bool:
    name = _normalize(pattern).rstrip("/").rsplit("/", 1)[-1].lower()
    return any(fnmatch.fnmatchcase(name, rule) for rule in SECURITY_RULES)


def related_patterns(pattern: str) -> tuple[str, ...]:
    return RELATED_PATTERNS.get(pattern, ())


def _clean_line(raw: str) -> str | None:
    """Return the usable pattern on a line, or None for blanks, comments and junk."""
    line = raw.rstrip("\r\n")
    if not line.strip() or line.lstrip().startswith("#"):
        return None
    # Trailing spaces are insignificant unless escaped
    stripped = line.rstrip(" \t")
    if stripped.endswith("\\") and len(stripped) < len(line):
        stripped += " "
    line = stripped.lstrip()
    if "\x00" in line or line.endswith("\\"):
        return None
    # Negations re-include files; there is nothing to copy for them
    if line.startswith("!"):
        return None
    if line.strip("/*") == "":
        return None
    if line.count("[") != line.count("]"):
        return None
    return line


def parse_lines(lines: Iterable[str]) -> list[ParsedPattern]:
    patterns: list[ParsedPattern] = []
    seen: set[str] = set()
    for raw in lines:
        pattern = _clean_line(raw)
        if pattern is None:
            if raw.strip() and not raw.lstrip().startswith("#"):
                logger.debug("Skipping unusable .gitignore line", extra={"line": raw})
            continue
        if pattern in seen:
            continue
        seen.add(pattern)
        sensitive = is_security_sensitive(pattern)
        category = categorize(pattern)
        if sensitive and category is PatternCategory.OTHER:
            category = PatternCategory.ENV
        patterns.append(
            ParsedPattern(
                pattern=pattern,
                category=category,
                is_security_sensitive=sensitive,
                related_patterns=related_patterns(pattern),
            )
        )
    return patterns


def load_gitignore(gitignore_path: Path | str) -> list[ParsedPattern]:
    """Parse a .gitignore file strictly.

    Returns [] when the file does not exist. Raises PatternParseError when it
    exists but cannot be read or decoded.
    """
    path = Path(gitignore_path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        raise PatternParseError(f"Cannot read {path}: {e}") from e
    return parse_lines(content.splitlines())


def parse_gitignore(gitignore_path: Path | str) -> list[ParsedPattern]:
    """Parse a .gitignore, degrading to an empty list on any read failure."""
    try:
        return load_gitignore(gitignore_path)
    except PatternParseError:
        logger.warning("Unreadable .gitignore, using no patterns", extra={"path": str(gitignore_path)}, exc_info=True)
        return []


def parse_project(project_root: Path | str) -> list[ParsedPattern]:
    return parse_gitignore(Path(project_root) / GITIGNORE_NAME)


def default_selection(patterns: Iterable[ParsedPattern]) -> list[str]:
    """All patterns except the security-sensitive ones."""
    return [p.pattern for p in patterns if not p.is_security_sensitive]


def group_patterns(patterns: Iterable[ParsedPattern]) -> dict[PatternCategory, list[ParsedPattern]]:
    grouped: dict[PatternCategory, list[ParsedPattern]] = {}
    for category in PatternCategory:
        members = [p for p in patterns if p.category is category]
        if members:
            grouped[category] = members
    return grouped


def security_warnings(patterns: Iterable[str]) -> list[str]:
    return [
        f'Pattern "{pattern}" may contain sensitive credentials'
        for pattern in patterns
        if is_security_sensitive(pattern)
    ]


# -- path matching ---------------------------------------------------------

def _glob_to_regex(glob: str) -> str:
    out = []
    i = 0
    while i < len(glob):
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif glob.startswith("/**", i) and i + 3 == len(glob):
            out.append("/.*")
            i += 3
        elif glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif glob[i] == "*":
            out.append("[^/]*")
            i += 1
        elif glob[i] == "?":
            out.append("[^/]")
            i += 1
        elif glob[i] == "[":
            end = glob.find("]", i + 1)
            if end == -1:
                out.append(re.escape(glob[i]))
                i += 1
            else:
                body = glob[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
        elif glob[i] == "\\" and i + 1 < len(glob):
            out.append(re.escape(glob[i + 1]))
            i += 2
        else:
            out.append(re.escape(glob[i]))
            i += 1
    return "".join(out)


class PathMatcher:
    """Matches repo-relative POSIX paths against a set of gitignore patterns."""

    def __init__(self, patterns: Iterable[str]) -> None:
        self._rules: list[tuple[re.Pattern, bool, bool]] = []
        for pattern in patterns:
            dir_only = pattern.endswith("/")
            body = pattern.rstrip("/")
            anchored = "/" in body
            body = body.lstrip("/")
            if not body:
                continue
            self._rules.append((re.compile(_glob_to_regex(body) + r"\Z"), dir_only, anchored))

    def __bool__(self) -> bool:
        return bool(self._rules)

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        name = rel_path.rsplit("/", 1)[-1]
        for regex, dir_only, anchored in self._rules:
            if dir_only and not is_dir:
                continue
            target = rel_path if anchored else name
            if regex.match(target):
                return True
        return False


def iter_matches(root: Path | str, patterns: Iterable[str], skip: Iterable[str] = (".git",)) -> Iterator[tuple[str, bool]]:
    """Yield (relative_path, is_dir) for top-most paths under root matching patterns.

    A matching directory is yielded once and not descended into.
    """
    matcher = PathMatcher(patterns)
    if not matcher:
        return
    root = Path(root)
    skipped = set(skip)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"
        keep = []
        for d in sorted(dirnames):
            rel = prefix + d
            if not prefix and d in skipped:
                continue
            if matcher.matches(rel, is_dir=True):
                yield rel, True
            elif not os.path.islink(os.path.join(dirpath, d)):
                keep.append(d)
        dirnames[:] = keep
        for f in sorted(filenames):
            rel = prefix + f
            if matcher.matches(rel, is_dir=False):
                yield rel, False
