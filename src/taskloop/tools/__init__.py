"""Collaborators the engine calls out to: plans, git, worktrees, build gates."""

from .build_test import BuildTestError, BuildTestRunner, detect_project_type
from .plans import PLAN_FILE_NAME, PlanFileError, PlanParser
from .vcs import CommitOutcome, CommitResult, GitCommitter, GitError, GitRepository
from .worktrees import WorktreeError, WorktreeIsolation, parse_worktree_list

__all__ = [
    "BuildTestError",
    "BuildTestRunner",
    "CommitOutcome",
    "CommitResult",
    "GitCommitter",
    "GitError",
    "GitRepository",
    "PLAN_FILE_NAME",
    "PlanFileError",
    "PlanParser",
    "WorktreeError",
    "WorktreeIsolation",
    "detect_project_type",
    "parse_worktree_list",
]
