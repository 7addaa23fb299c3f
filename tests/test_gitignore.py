from pathlib import Path

import pytest

from grove.errors import PatternParseError
from grove.models import PatternCategory
from grove.services.gitignore import (
    PathMatcher,
    categorize,
    default_selection,
    group_patterns,
    is_security_sensitive,
    iter_matches,
    load_gitignore,
    parse_gitignore,
    parse_lines,
    parse_project,
    security_warnings,
)


@pytest.mark.parametrize("pattern,category", [
    ("node_modules/", PatternCategory.DEPENDENCIES),
    ("/node_modules", PatternCategory.DEPENDENCIES),
    ("dist", PatternCategory.BUILD),
    (".next/", PatternCategory.BUILD),
    (".env", PatternCategory.ENV),
    ("*.log", PatternCategory.CACHE),
    ("__pycache__/", PatternCategory.CACHE),
    (".vscode/", PatternCategory.IDE),
    ("coverage/", PatternCategory.TEST),
    ("notes.txt", PatternCategory.OTHER),
])
def test_categorize(pattern, category):
    assert categorize(pattern) is category


@pytest.mark.parametrize("pattern,sensitive", [
    (".env", True),
    (".env.local", True),
    ("config/.env", True),
    ("*.pem", True),
    ("id_rsa", True),
    ("secrets.json", True),
    ("node_modules/", False),
    ("*.log", False),
    ("environment.md", False),
])
def test_is_security_sensitive(pattern, sensitive):
    assert is_security_sensitive(pattern) is sensitive


class TestParseLines:
    def test_skips_comments_blanks_and_negations(self):
        parsed = parse_lines(["# deps", "", "node_modules/", "!keep.log", "   ", "*.log"])
        assert [p.pattern for p in parsed] == ["node_modules/", "*.log"]

    @pytest.mark.parametrize("line", ["/", "**", "[abc", "foo\\", "bad\x00line"])
    def test_skips_malformed_lines(self, line):
        assert parse_lines([line]) == []

    def test_dedupes(self):
        parsed = parse_lines(["dist/", "dist/"])
        assert len(parsed) == 1

    def test_sensitive_uncategorized_pattern_is_filed_under_env(self):
        (parsed,) = parse_lines(["secrets.json"])
        assert parsed.is_security_sensitive is True
        assert parsed.category is PatternCategory.ENV

    def test_related_patterns(self):
        (parsed,) = parse_lines(["node_modules/"])
        assert "package-lock.json" in parsed.related_patterns


class TestLoadGitignore:
    def test_missing_file_is_empty(self, tmp_path):
        assert load_gitignore(tmp_path / ".gitignore") == []

    def test_unreadable_file_raises(self, tmp_path):
        path = tmp_path / ".gitignore"
        path.write_bytes(b"\xff\xfe\xfa bad")
        with pytest.raises(PatternParseError):
            load_gitignore(path)

    def test_lenient_parse_degrades_to_empty(self, tmp_path):
        path = tmp_path / ".gitignore"
        path.write_bytes(b"\xff\xfe\xfa bad")
        assert parse_gitignore(path) == []

    def test_parse_project(self, tmp_path):
        (tmp_path / ".gitignore").write_text("node_modules/\n.env\n")
        assert [p.pattern for p in parse_project(tmp_path)] == ["node_modules/", ".env"]


def test_default_selection_excludes_sensitive():
    parsed = parse_lines(["node_modules/", ".env", "*.pem", "dist/"])
    assert default_selection(parsed) == ["node_modules/", "dist/"]


def test_group_patterns_keeps_only_populated_categories():
    grouped = group_patterns(parse_lines(["node_modules/", "vendor/", "*.log"]))
    assert list(grouped) == [PatternCategory.DEPENDENCIES, PatternCategory.CACHE]
    assert [p.pattern for p in grouped[PatternCategory.DEPENDENCIES]] == ["node_modules/", "vendor/"]


def test_security_warnings():
    warnings = security_warnings(["node_modules/", ".env"])
    assert len(warnings) == 1
    assert ".env" in warnings[0]


class TestPathMatcher:
    @pytest.mark.parametrize("pattern,path,is_dir,expected", [
        ("node_modules/", "node_modules", True, True),
        ("node_modules/", "pkg/node_modules", True, True),
        ("node_modules/", "node_modules", False, False),
        ("*.log", "logs/debug.log", False, True),
        ("/build", "build", True, True),
        ("/build", "src/build", True, False),
        ("docs/*.md", "docs/a.md", False, True),
        ("docs/*.md", "x/docs/a.md", False, False),
        ("**/temp", "a/b/temp", True, True),
        ("file?.txt", "file1.txt", False, True),
        ("file[0-9].txt", "filex.txt", False, False),
    ])
    def test_matches(self, pattern, path, is_dir, expected):
        assert PathMatcher([pattern]).matches(path, is_dir) is expected

    def test_empty_matcher_is_falsy(self):
        assert not PathMatcher([])


def test_iter_matches_yields_top_most_paths(tmp_path: Path):
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "debug.log").write_text("")
    (tmp_path / "app.log").write_text("")
    (tmp_path / ".env").write_text("SECRET=1")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "trace.log").write_text("")

    found = set(iter_matches(tmp_path, ["node_modules/", "*.log"]))

    assert found == {("node_modules", True), ("app.log", False), ("src/debug.log", False)}
