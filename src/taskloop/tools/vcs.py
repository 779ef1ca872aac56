"""Git plumbing for the commit phases and for isolated worktree copies."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

_NOTHING_TO_COMMIT = ("nothing to commit", "nothing added to commit")


class GitError(RuntimeError):
    """A git invocation failed or the directory is not a usable repository."""


class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    NO_CHANGES = "noChanges"


@dataclass(slots=True)
class CommitResult:
    outcome: CommitOutcome
    output: str = ""
    sha: str | None = None

    @property
    def committed(self) -> bool:
        return self.outcome is CommitOutcome.COMMITTED


def _invoke(cwd: Path, args: Sequence[str], timeout: Optional[float]) -> subprocess.CompletedProcess[str]:
    label = "git " + " ".join(args)
    try:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as error:
        if not cwd.is_dir():
            raise GitError(f"Directory does not exist: {cwd}") from error
        raise GitError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        raise GitError(f"{label} timed out after {timeout}s") from error


class GitRepository:
    """A checkout rooted at ``root``, either a main clone or a worktree."""

    def __init__(self, root: Path | str, *, timeout: float | None = None) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        # Worktrees carry a ``.git`` file instead of a directory.
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None, *, timeout: float | None = None) -> "GitRepository":
        """Open the checkout that contains ``start`` (defaults to the cwd)."""

        origin = Path(start).resolve() if start else Path.cwd()
        completed = _invoke(origin, ["rev-parse", "--show-toplevel"], timeout)
        if completed.returncode != 0:
            raise GitError(f"Unable to locate a git repository from {origin}")
        return cls(completed.stdout.strip(), timeout=timeout)

    def run(self, *args: str, allow_failure: bool = False) -> subprocess.CompletedProcess[str]:
        completed = _invoke(self.root, args, self.timeout)
        if completed.returncode != 0 and not allow_failure:
            detail = (completed.stderr or completed.stdout).strip() or f"exit status {completed.returncode}"
            raise GitError(f"git {args[0]} failed in {self.root}: {detail}")
        return completed

    def working_tree_changes(self) -> List[Path]:
        """Paths reported by ``git status``, untracked files included.

        Renames and copies resolve to their destination path.
        """

        changed = set()
        for entry in self.run("status", "--porcelain").stdout.splitlines():
            status, _, name = entry[:2], entry[2:3], entry[3:]
            if not name:
                continue
            if status[0] in "RC":
                _, _, target = name.partition(" -> ")
                name = target or name
            changed.add(Path(name.strip().strip('"')))
        return sorted(changed, key=Path.as_posix)

    def commit_all(self, message: str) -> CommitResult:
        """Stage everything and commit; a clean tree yields ``NO_CHANGES``."""

        self.run("add", "--all")
        completed = self.run("commit", "-m", message, allow_failure=True)
        output = (completed.stdout or completed.stderr).strip()
        if completed.returncode == 0:
            head = self.run("rev-parse", "HEAD").stdout.strip()
            LOGGER.debug("Committed %s in %s", head[:12], self.root)
            return CommitResult(CommitOutcome.COMMITTED, output, head)
        if any(marker in output.lower() for marker in _NOTHING_TO_COMMIT):
            return CommitResult(CommitOutcome.NO_CHANGES, output)
        raise GitError(f"git commit failed in {self.root}: {output}")

    def add_worktree(self, path: Path, branch: str) -> None:
        self.run("worktree", "add", "-b", branch, str(path))

    def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        flags = ["--force"] if force else []
        self.run("worktree", "remove", *flags, str(path))

    def list_worktrees_porcelain(self) -> str:
        return self.run("worktree", "list", "--porcelain").stdout


class GitCommitter:
    """Commits a directory's whole working tree on behalf of the engine."""

    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    def commit_all(self, message: str, directory: Path) -> CommitResult:
        return GitRepository.discover(directory, timeout=self.timeout).commit_all(message)


__all__ = ["CommitOutcome", "CommitResult", "GitCommitter", "GitError", "GitRepository"]
