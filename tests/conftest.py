from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
TESTS = ROOT / "tests"

for entry in (SRC, TESTS):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from fakes import run_git  # noqa: E402


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository with one committed file."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "dev@example.com")
    run_git(repo_root, "config", "user.name", "Taskloop Tests")
    (repo_root / "README.md").write_text("# Sample\n", encoding="utf-8")
    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "-m", "Initial commit")
    return repo_root
