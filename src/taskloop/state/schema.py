"""Typed records tracked by a taskloop execution context."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..phases import Phase


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a plan task."""

    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogType(str, Enum):
    """Kinds of entries in the run log."""

    OUTPUT = "output"
    TOOL_USE = "toolUse"
    RESULT = "result"
    ERROR = "error"
    INFO = "info"
    SEPARATOR = "separator"


class TaskFailureResponse(str, Enum):
    """User decision for a task whose retries were exhausted."""

    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


class PlanTask(RecordModel):
    """One numbered task of a plan."""

    number: int
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    subtasks: List[str] = Field(default_factory=list)


class Plan(RecordModel):
    """Plan source text and the ordered tasks parsed from it."""

    raw_text: str = ""
    tasks: List[PlanTask] = Field(default_factory=list)

    def first_unfinished_index(self) -> Optional[int]:
        """Return the index of the first task that is not completed."""
        for index, task in enumerate(self.tasks):
            if task.status != TaskStatus.COMPLETED:
                return index
        return None

    def completed_tasks(self) -> List[PlanTask]:
        return [task for task in self.tasks if task.status == TaskStatus.COMPLETED]


class InterviewExchange(RecordModel):
    """Single clarifying question and the user's answer."""

    question: str
    answer: str
    timestamp: datetime = Field(default_factory=utc_now)


class InterviewSession(RecordModel):
    """Requirements-clarification exchange preceding plan generation.

    ``completed_at`` only ever moves from ``None`` to a timestamp, so
    :attr:`is_complete` never reverts once set.
    """

    feature_description: str = Field(frozen=True)
    exchanges: List[InterviewExchange] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def add_exchange(self, question: str, answer: str) -> None:
        self.exchanges.append(InterviewExchange(question=question, answer=answer))

    def mark_complete(self) -> None:
        if self.completed_at is None:
            self.completed_at = utc_now()

    def prompt_context(self) -> str:
        """Render the exchanges as a question/answer block for prompts."""
        lines: List[str] = []
        for exchange in self.exchanges:
            lines.append(f"Q: {exchange.question}")
            lines.append(f"A: {exchange.answer}")
        return "\n".join(lines)


class QuestionOption(RecordModel):
    label: str
    description: str = ""


class PendingQuestion(RecordModel):
    """Question raised by the agent through the ask-user tool."""

    id: str = Field(default_factory=new_id)
    tool_use_id: str
    question: str
    header: str = ""
    options: List[QuestionOption] = Field(default_factory=list)
    multi_select: bool = False
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_freeform(self) -> bool:
        return not self.options


class PendingTaskFailure(RecordModel):
    """Task failure awaiting a retry/skip/stop decision from the user."""

    id: str = Field(default_factory=new_id)
    task_number: int
    task_title: str
    error: str


class LogEntry(RecordModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    phase: Phase
    type: LogType
    message: str


class ExecutionError(RecordModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    phase: Phase
    message: str
    underlying_error: Optional[str] = None
    is_recoverable: bool = False


class ContinuationSummary(RecordModel):
    """Progress snapshot carried across a context-budget handoff."""

    task_number: int
    task_title: str
    progress_description: str
    files_modified: List[str] = Field(default_factory=list)
    pending_work: str
    generated_at: datetime = Field(default_factory=utc_now)

    def prompt_context(self) -> str:
        files_section = (
            "\n".join(f"- {path}" for path in self.files_modified)
            if self.files_modified
            else "None yet"
        )
        return (
            "[CONTINUATION FROM PREVIOUS SESSION]\n"
            f"Task: {self.task_number} - {self.task_title}\n\n"
            f"Previous Progress:\n{self.progress_description}\n\n"
            f"Files Modified:\n{files_section}\n\n"
            f"Remaining Work:\n{self.pending_work}\n\n"
            "Continue from where the previous session left off.\n"
            "[END CONTINUATION CONTEXT]\n\n"
        )


class WorkspaceInfo(RecordModel):
    """Isolated copy provisioned for a workspace whose target path was taken."""

    id: str = Field(default_factory=new_id)
    original_path: Path
    isolated_path: Path
    branch_name: str
    created_at: datetime = Field(default_factory=utc_now)


class CommandResult(RecordModel):
    """Outcome of a build or test command."""

    success: bool
    output: str = ""
    error_output: Optional[str] = None
    exit_code: int
    duration: float = 0.0

    @property
    def failure_output(self) -> str:
        return self.error_output or self.output


__all__ = [
    "CommandResult",
    "ContinuationSummary",
    "ExecutionError",
    "InterviewExchange",
    "InterviewSession",
    "LogEntry",
    "LogType",
    "PendingQuestion",
    "PendingTaskFailure",
    "Plan",
    "PlanTask",
    "QuestionOption",
    "RecordModel",
    "TaskFailureResponse",
    "TaskStatus",
    "WorkspaceInfo",
    "new_id",
    "utc_now",
]
