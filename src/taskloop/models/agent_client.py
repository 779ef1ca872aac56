"""Client base class shared by coding-agent integrations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .messages import StreamMessage

__all__ = [
    "AgentClient",
    "AgentClientError",
    "AgentExecutableNotFoundError",
    "AgentNoResultError",
    "AgentProcessError",
    "AgentResult",
    "MessageHandler",
    "PermissionMode",
    "ProcessErrorKind",
]

MessageHandler = Callable[[StreamMessage], None]

# Exit code the CLI uses for recoverable failures (overload, transient API errors).
SOFT_EXIT_CODE = 1


class PermissionMode(str, Enum):
    """Capability granted to the agent for one call."""

    READ_ONLY = "plan"
    ACCEPT_EDITS = "acceptEdits"
    DEFAULT = "default"


class ProcessErrorKind(str, Enum):
    NON_ZERO_EXIT = "non_zero_exit"
    OUTPUT_READ_ERROR = "output_read_error"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


class AgentClientError(RuntimeError):
    """Base error raised for agent client failures."""

    @property
    def is_retryable(self) -> bool:
        return False


class AgentProcessError(AgentClientError):
    """Raised when the agent process times out, is interrupted or exits badly."""

    def __init__(
        self,
        kind: ProcessErrorKind,
        *,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.kind == ProcessErrorKind.TIMED_OUT:
            return "Agent process timed out"
        if self.kind == ProcessErrorKind.INTERRUPTED:
            return "Agent process was interrupted"
        if self.kind == ProcessErrorKind.OUTPUT_READ_ERROR:
            detail = f": {self.stderr}" if self.stderr else ""
            return f"Failed to read agent output{detail}"
        detail = f": {self.stderr.strip()}" if self.stderr and self.stderr.strip() else ""
        return f"Agent process exited with code {self.exit_code}{detail}"

    @property
    def is_retryable(self) -> bool:
        if self.kind in {ProcessErrorKind.TIMED_OUT, ProcessErrorKind.INTERRUPTED}:
            return True
        if self.kind == ProcessErrorKind.NON_ZERO_EXIT:
            return self.exit_code == SOFT_EXIT_CODE
        return False


class AgentNoResultError(AgentClientError):
    """Raised when the stream ended without a ``result`` message."""

    def __init__(self, message: str = "Agent produced no result message") -> None:
        super().__init__(message)


class AgentExecutableNotFoundError(AgentClientError):
    """Raised when the agent executable cannot be launched."""


@dataclass(slots=True)
class AgentResult:
    """Final outcome of one agent call."""

    result_text: str
    session_id: str
    total_cost: float
    duration_ms: int
    is_error: bool


class AgentClient:
    """Interface for a conversational coding agent.

    One call is in flight at a time per client. ``interrupt`` asks the running
    call to stop (it then raises an interrupted :class:`AgentProcessError`);
    ``terminate`` kills it outright.
    """

    def execute(
        self,
        prompt: str,
        *,
        working_directory: Path,
        permission_mode: PermissionMode,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        on_message: Optional[MessageHandler] = None,
    ) -> AgentResult:
        raise NotImplementedError("Subclasses must implement execute().")

    def interrupt(self) -> None:
        raise NotImplementedError("Subclasses must implement interrupt().")

    def terminate(self) -> None:
        raise NotImplementedError("Subclasses must implement terminate().")

    @property
    def is_running(self) -> bool:
        return False
