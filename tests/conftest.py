from __future__ import annotations

import shutil
from pathlib import Path

import pytest

# Stage commands used throughout the suite.
_TOOLS = ("sh", "cat", "echo", "grep", "sort", "wc", "tr", "head", "yes", "false")

requires_posix_tools = pytest.mark.skipif(
    any(shutil.which(tool) is None for tool in _TOOLS),
    reason="POSIX userland (sh, cat, grep, ...) not available",
)


@pytest.fixture
def words_file(tmp_path: Path) -> Path:
    """Lines containing ``test`` hold exactly 19 words between them."""

    path = tmp_path / "words.txt"
    path.write_text(
        "test one two\n"
        "skip this line\n"
        "another test line here\n"
        "nothing to see\n"
        "testing the pipeline engine now\n"
        "a test b c d e f\n"
        "the end\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def ignore_file(tmp_path: Path) -> Path:
    """An ignore list whose ``test`` lines hold four words."""

    path = tmp_path / ".gitignore"
    path.write_text(
        "node_modules/\n"
        "test-results/\n"
        "dist/\n"
        "coverage test\n"
        "*.log\n"
        "tests\n",
        encoding="utf-8",
    )
    return path
