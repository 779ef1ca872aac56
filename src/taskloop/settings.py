"""Configuration records and the shared preferences file."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, ValidationError

from .state.schema import RecordModel

LOGGER = logging.getLogger(__name__)

DEFAULT_PREFERENCES_NAME = "taskloop.yaml"
MAX_RECENT_PROJECTS = 10

DEFAULT_UI_KEYWORDS: List[str] = [
    "view",
    "ui",
    "layout",
    "animation",
    "style",
    "color",
    "font",
    "icon",
    "image",
    "button",
    "label",
    "text",
    "visual",
    "display",
    "indicator",
    "sheet",
    "modal",
    "navigation",
    "sidebar",
    "screen",
]


class PreferencesError(RuntimeError):
    """Raised when the preferences file cannot be read or validated."""


class FailurePolicy(str, Enum):
    """Escalation applied once a task exhausts its retries."""

    PAUSE_FOR_USER = "pauseForUser"
    RETRY_THEN_SKIP = "retryThenSkip"
    RETRY_THEN_STOP = "retryThenStop"


class ProjectType(str, Enum):
    SWIFT = "swift"
    XCODE = "xcode"
    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    RUST = "rust"
    GO = "go"
    UNKNOWN = "unknown"


class RetryConfiguration(RecordModel):
    """Backoff parameters for the retry loop around each agent call."""

    max_attempts: int = Field(3, ge=1)
    initial_delay: float = Field(1.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_delay: float = Field(30.0, ge=0.0)


class TimeoutConfiguration(RecordModel):
    """Seconds allowed for read-only calls, editing calls and commits."""

    plan_mode: float = Field(300.0, gt=0.0)
    execution: float = Field(900.0, gt=0.0)
    commit: float = Field(60.0, gt=0.0)


class AutonomousConfiguration(RecordModel):
    enabled: bool = False
    failure_policy: FailurePolicy = FailurePolicy.PAUSE_FOR_USER
    max_task_retries: int = Field(3, ge=0)
    auto_answer: bool = False
    run_build_after_commit: bool = False
    run_tests_after_commit: bool = False
    project_context: str = ""
    ui_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_UI_KEYWORDS))


class ProjectConfiguration(RecordModel):
    project_type: ProjectType = ProjectType.UNKNOWN
    build_command: Optional[str] = None
    test_command: Optional[str] = None


class AgentSettings(RecordModel):
    executable: str = "claude"


class Preferences(RecordModel):
    """Read-mostly settings shared by every workspace."""

    retry: RetryConfiguration = Field(default_factory=RetryConfiguration)
    timeouts: TimeoutConfiguration = Field(default_factory=TimeoutConfiguration)
    autonomous: AutonomousConfiguration = Field(default_factory=AutonomousConfiguration)
    project: ProjectConfiguration = Field(default_factory=ProjectConfiguration)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    last_project_path: Optional[Path] = None
    recent_projects: List[Path] = Field(default_factory=list)

    def add_recent_project(self, path: Path | str) -> None:
        """Record ``path`` as the most recent project, keeping the list bounded."""

        candidate = Path(path)
        remaining = [entry for entry in self.recent_projects if entry != candidate]
        self.recent_projects = [candidate, *remaining][:MAX_RECENT_PROJECTS]
        self.last_project_path = candidate

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def load(cls, path: Path) -> "Preferences":
        """Load preferences from ``path``; a missing file yields defaults."""

        if not path.exists():
            return cls()
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise PreferencesError(f"Failed to parse {path}: {error}") from error

        if not isinstance(data, dict):
            raise PreferencesError(f"Expected mapping at top level of {path}")
        try:
            return cls.model_validate(data)
        except ValidationError as error:
            raise PreferencesError(f"Invalid preferences in {path}: {error}") from error

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self.to_dict(), handle, sort_keys=False)
        LOGGER.debug("Saved preferences to %s", path)


__all__ = [
    "AgentSettings",
    "AutonomousConfiguration",
    "DEFAULT_PREFERENCES_NAME",
    "DEFAULT_UI_KEYWORDS",
    "FailurePolicy",
    "MAX_RECENT_PROJECTS",
    "Preferences",
    "PreferencesError",
    "ProjectConfiguration",
    "ProjectType",
    "RetryConfiguration",
    "TimeoutConfiguration",
]
