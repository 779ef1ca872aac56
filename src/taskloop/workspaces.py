"""Independent workspaces, each owning one context and one engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from .engine import ExecutionEngine
from .models.claude_cli import ClaudeCLIClient
from .settings import Preferences
from .state.context import ExecutionContext
from .state.schema import LogType, WorkspaceInfo, new_id
from .tools.worktrees import WorktreeError, WorktreeIsolation
from .utils.slug import workspace_label

LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[ExecutionContext], ExecutionEngine]


class Isolation(Protocol):
    def create_isolated_copy(self, path: Path) -> WorkspaceInfo: ...

    def remove_isolated_copy(self, info: WorkspaceInfo) -> None: ...


class WorkspaceError(RuntimeError):
    """Raised for operations on unknown or busy workspaces."""


@dataclass(slots=True)
class Workspace:
    id: str
    label: str
    context: ExecutionContext
    engine: ExecutionEngine
    target_path: Optional[Path] = None
    workspace_info: Optional[WorkspaceInfo] = None

    @property
    def effective_path(self) -> Optional[Path]:
        """Directory the engine actually works in (the isolated copy when duplicated)."""
        return self.context.project_path

    @property
    def is_isolated(self) -> bool:
        return self.workspace_info is not None


def default_engine_factory(preferences: Preferences) -> EngineFactory:
    def _factory(context: ExecutionContext) -> ExecutionEngine:
        agent = ClaudeCLIClient(preferences.agent.executable)
        return ExecutionEngine(context, agent, preferences=preferences)

    return _factory


class WorkspaceCoordinator:
    """Manage open workspaces and keep their target directories apart.

    When a workspace targets a directory another open workspace already uses,
    it is bound to an isolated copy of that directory instead. Engines share
    nothing but the read-mostly :class:`Preferences`.
    """

    def __init__(
        self,
        *,
        preferences: Optional[Preferences] = None,
        engine_factory: Optional[EngineFactory] = None,
        isolation: Optional[Isolation] = None,
    ) -> None:
        self.preferences = preferences or Preferences()
        self._engine_factory = engine_factory or default_engine_factory(self.preferences)
        self.isolation: Isolation = isolation or WorktreeIsolation()
        self._workspaces: Dict[str, Workspace] = {}
        self._order: List[str] = []
        self.active_workspace_id: Optional[str] = None

    @property
    def workspaces(self) -> List[Workspace]:
        return [self._workspaces[identifier] for identifier in self._order]

    @property
    def active_workspace(self) -> Optional[Workspace]:
        if self.active_workspace_id is None:
            return None
        return self._workspaces.get(self.active_workspace_id)

    def get(self, workspace_id: str) -> Workspace:
        try:
            return self._workspaces[workspace_id]
        except KeyError as error:
            raise WorkspaceError(f"Unknown workspace: {workspace_id}") from error

    def create_workspace(self, target_path: Optional[Path] = None) -> Workspace:
        """Open a workspace, optionally bound to ``target_path``, and make it active.

        Isolation failures propagate and leave the coordinator unchanged.
        """

        context = ExecutionContext()
        workspace = Workspace(
            id=new_id(),
            label=workspace_label(None),
            context=context,
            engine=self._engine_factory(context),
        )
        if target_path is not None:
            path = Path(target_path)
            self._apply(workspace, path, self._provision(path, workspace.id))
        workspace.label = workspace_label(target_path, {item.label for item in self.workspaces})
        self._workspaces[workspace.id] = workspace
        self._order.append(workspace.id)
        self.active_workspace_id = workspace.id
        LOGGER.info("Opened workspace %s (%s)", workspace.label, workspace.effective_path)
        return workspace

    def set_target_path(self, workspace_id: str, target_path: Path) -> Workspace:
        """Point an idle workspace at ``target_path``, isolating it when needed."""

        workspace = self.get(workspace_id)
        if workspace.context.is_running:
            raise WorkspaceError(f"Workspace {workspace.label} is running; stop it first")
        path = Path(target_path)
        previous = workspace.workspace_info
        info = self._provision(path, workspace.id)
        if previous is not None:
            try:
                self.isolation.remove_isolated_copy(previous)
            except WorktreeError:
                if info is not None:
                    self.isolation.remove_isolated_copy(info)
                raise
        self._apply(workspace, path, info)
        others = {item.label for item in self.workspaces if item.id != workspace.id}
        workspace.label = workspace_label(target_path, others)
        return workspace

    def is_duplicate(self, path: Path, *, excluding: Optional[str] = None) -> bool:
        """Return ``True`` when another open workspace already targets ``path``."""

        candidate = path.resolve()
        for workspace in self.workspaces:
            if workspace.id == excluding:
                continue
            for used in (workspace.effective_path, workspace.target_path):
                if used is not None and used.resolve() == candidate:
                    return True
        return False

    def close_workspace(self, workspace_id: str) -> None:
        """Stop the engine, release any isolated copy, and forget the workspace.

        If the isolated copy cannot be removed the error propagates and the
        workspace stays open so the caller can retry.
        """

        workspace = self.get(workspace_id)
        if workspace.context.can_stop:
            workspace.engine.stop()
        if workspace.workspace_info is not None:
            self.isolation.remove_isolated_copy(workspace.workspace_info)
            workspace.workspace_info = None

        index = self._order.index(workspace_id)
        self._order.remove(workspace_id)
        del self._workspaces[workspace_id]
        if self.active_workspace_id == workspace_id:
            if not self._order:
                self.active_workspace_id = None
            else:
                self.active_workspace_id = self._order[min(index, len(self._order) - 1)]
        LOGGER.info("Closed workspace %s", workspace.label)

    def select_workspace(self, workspace_id: str) -> None:
        if workspace_id in self._workspaces:
            self.active_workspace_id = workspace_id

    def _provision(self, path: Path, workspace_id: str) -> Optional[WorkspaceInfo]:
        """Create an isolated copy of ``path`` if another workspace already uses it."""

        if self.is_duplicate(path, excluding=workspace_id):
            return self.isolation.create_isolated_copy(path)
        return None

    def _apply(self, workspace: Workspace, path: Path, info: Optional[WorkspaceInfo]) -> None:
        context = workspace.context
        workspace.workspace_info = info
        if info is not None:
            context.project_path = info.isolated_path
            context.add_log(
                LogType.INFO,
                f"Project already open in another workspace; using isolated copy {info.isolated_path} "
                f"on branch {info.branch_name}",
            )
        else:
            context.project_path = path
        workspace.target_path = path
        self.preferences.add_recent_project(path)


__all__ = [
    "EngineFactory",
    "Isolation",
    "Workspace",
    "WorkspaceCoordinator",
    "WorkspaceError",
    "default_engine_factory",
]
