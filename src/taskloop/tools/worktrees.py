"""Isolated workspace copies backed by ``git worktree``."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List

from ..state.schema import WorkspaceInfo
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

WORKTREES_DIR_NAME = ".worktrees"
BRANCH_PREFIX = "taskloop-worktree-"


class WorktreeError(RuntimeError):
    """Raised when an isolated copy cannot be created, listed or removed."""


def parse_worktree_list(output: str, original_path: Path) -> List[WorkspaceInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Only entries living under ``<original>/.worktrees/<uuid>`` with a branch
    are reported; the main checkout and foreign worktrees are skipped.
    """

    worktrees_dir = (Path(original_path) / WORKTREES_DIR_NAME).as_posix()
    entries: List[WorkspaceInfo] = []
    for block in output.split("\n\n"):
        if not block.strip():
            continue
        worktree_path: str | None = None
        branch: str | None = None
        for line in block.splitlines():
            if line.startswith("worktree "):
                worktree_path = line[len("worktree ") :]
            elif line.startswith("branch "):
                ref = line[len("branch ") :]
                branch = ref[len("refs/heads/") :] if ref.startswith("refs/heads/") else ref
        if worktree_path is None or branch is None:
            continue
        if not worktree_path.startswith(f"{worktrees_dir}/"):
            continue
        candidate = Path(worktree_path)
        try:
            identifier = str(uuid.UUID(candidate.name))
        except ValueError:
            continue
        entries.append(
            WorkspaceInfo(
                id=identifier,
                original_path=Path(original_path),
                isolated_path=candidate,
                branch_name=branch,
            )
        )
    return entries


class WorktreeIsolation:
    """Workspace-isolation collaborator creating one worktree per duplicate."""

    def create_isolated_copy(self, path: Path) -> WorkspaceInfo:
        repo = self._repository(path)
        identifier = str(uuid.uuid4())
        worktrees_dir = repo.root / WORKTREES_DIR_NAME
        isolated_path = worktrees_dir / identifier
        branch = f"{BRANCH_PREFIX}{identifier}"
        try:
            worktrees_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WorktreeError(f"Failed to create directory: {worktrees_dir}") from error
        self._exclude_worktrees_dir(repo)
        try:
            repo.add_worktree(isolated_path, branch)
        except GitError as error:
            raise WorktreeError(str(error)) from error
        LOGGER.info("Created isolated copy %s on branch %s", isolated_path, branch)
        return WorkspaceInfo(
            id=identifier,
            original_path=repo.root,
            isolated_path=isolated_path,
            branch_name=branch,
        )

    def remove_isolated_copy(self, info: WorkspaceInfo) -> None:
        repo = self._repository(info.original_path)
        try:
            repo.remove_worktree(info.isolated_path)
        except GitError as error:
            raise WorktreeError(str(error)) from error
        LOGGER.info("Removed isolated copy %s", info.isolated_path)

    def list_isolated_copies(self, path: Path) -> List[WorkspaceInfo]:
        repo = self._repository(path)
        try:
            output = repo.list_worktrees_porcelain()
        except GitError as error:
            raise WorktreeError(str(error)) from error
        return parse_worktree_list(output, repo.root)

    @staticmethod
    def _repository(path: Path) -> GitRepository:
        try:
            return GitRepository(path)
        except GitError as error:
            raise WorktreeError(str(error)) from error

    @staticmethod
    def _exclude_worktrees_dir(repo: GitRepository) -> None:
        """Keep the worktrees directory out of ``git add --all`` in the main checkout."""

        exclude_path = repo.root / ".git" / "info" / "exclude"
        if not (repo.root / ".git").is_dir():
            return
        pattern = f"/{WORKTREES_DIR_NAME}/"
        try:
            existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
            if pattern in existing.splitlines():
                return
            exclude_path.parent.mkdir(parents=True, exist_ok=True)
            suffix = "" if not existing or existing.endswith("\n") else "\n"
            exclude_path.write_text(f"{existing}{suffix}{pattern}\n", encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to update %s: %s", exclude_path, error)


__all__ = [
    "BRANCH_PREFIX",
    "WORKTREES_DIR_NAME",
    "WorktreeError",
    "WorktreeIsolation",
    "parse_worktree_list",
]
