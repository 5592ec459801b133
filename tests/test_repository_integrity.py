"""Checks that apply to the source tree as a whole."""

from __future__ import annotations

import re
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CHECKED_SUFFIXES = {".py", ".md", ".toml", ".txt", ".cfg", ".ini"}
SKIPPED_DIRS = {".git", "__pycache__", ".pytest_cache", ".mypy_cache", ".venv", "build", "dist"}
MERGE_MARKER_RE = re.compile(r"^(<{7}|={7}|>{7})(\s|$)", re.MULTILINE)


def _source_files() -> list[Path]:
    return [
        path
        for path in sorted(PROJECT_ROOT.rglob("*"))
        if path.is_file()
        and path.suffix in CHECKED_SUFFIXES
        and not SKIPPED_DIRS.intersection(path.relative_to(PROJECT_ROOT).parts)
    ]


def test_source_tree_has_no_merge_markers() -> None:
    marked = [
        str(path.relative_to(PROJECT_ROOT))
        for path in _source_files()
        if MERGE_MARKER_RE.search(path.read_text(encoding="utf-8", errors="ignore"))
    ]

    assert not marked, "Unresolved merge markers in: " + ", ".join(marked)


def test_both_packages_are_present() -> None:
    files = {str(path.relative_to(PROJECT_ROOT)) for path in _source_files()}

    assert "app/__init__.py" in files
    assert "spoilershield/__main__.py" in files
