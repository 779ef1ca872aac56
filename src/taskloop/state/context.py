"""Mutable state container for one workflow instance."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, List, Optional

from ..phases import Phase
from ..settings import (
    AutonomousConfiguration,
    ProjectConfiguration,
    RetryConfiguration,
    TimeoutConfiguration,
)
from .schema import (
    CommandResult,
    ContinuationSummary,
    ExecutionError,
    InterviewSession,
    LogEntry,
    LogType,
    PendingQuestion,
    PendingTaskFailure,
    Plan,
    PlanTask,
    TaskStatus,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 10_000
MAX_ERROR_ENTRIES = 1_000
MAX_BUILD_FIX_ATTEMPTS = 3
MAX_TEST_FIX_ATTEMPTS = 3

ContextListener = Callable[[str, "ExecutionContext"], None]


class ExecutionContext:
    """State of a single run: phase, plan, logs, errors, usage and prompts.

    The context is mutated by the engine loop and by the control entry points.
    Both take :attr:`lock` around every read-modify-write sequence; listeners
    are notified with an event name (``"phase"``, ``"log"``, ``"error"``,
    ``"plan"``, ``"question"``, ``"failure"``) after each change.
    """

    def __init__(
        self,
        *,
        max_log_entries: int = MAX_LOG_ENTRIES,
        max_error_entries: int = MAX_ERROR_ENTRIES,
    ) -> None:
        self.lock = threading.RLock()
        self._listeners: List[ContextListener] = []
        self.logs: Deque[LogEntry] = deque(maxlen=max_log_entries)
        self.errors: Deque[ExecutionError] = deque(maxlen=max_error_entries)
        self.project_path: Optional[Path] = None
        self.retry_configuration = RetryConfiguration()
        self.timeout_configuration = TimeoutConfiguration()
        self.autonomous_config = AutonomousConfiguration()
        self.project_configuration = ProjectConfiguration()
        self._clear_run_state()

    def _clear_run_state(self) -> None:
        self.feature_description = ""
        self.plan: Optional[Plan] = None
        self.existing_plan: Optional[Plan] = None
        self.current_task_index: Optional[int] = None
        self._phase = Phase.IDLE
        self.session_id: Optional[str] = None
        self.start_time: Optional[float] = None
        self.started_at: Optional[datetime] = None
        self.pending_question: Optional[PendingQuestion] = None
        self.question_queue: Deque[PendingQuestion] = deque()
        self.question_origin_phase: Optional[Phase] = None
        self.total_cost = 0.0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.continuation_summary: Optional[ContinuationSummary] = None
        self.is_handoff_in_progress = False
        self.current_retry_attempt = 0
        self.task_failure_count = 0
        self.pending_task_failure: Optional[PendingTaskFailure] = None
        self.build_attempts = 0
        self.test_attempts = 0
        self.last_build_result: Optional[CommandResult] = None
        self.last_test_result: Optional[CommandResult] = None
        self.interview_session: Optional[InterviewSession] = None
        self.current_interview_question: Optional[str] = None

    # ------------------------------------------------------------ listeners
    def subscribe(self, listener: ContextListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        with self.lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self.lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self)
            except Exception as error:  # noqa: BLE001 - listeners belong to callers
                LOGGER.warning("Context listener failed on %s: %s", event, error)

    # ---------------------------------------------------------------- phase
    @property
    def phase(self) -> Phase:
        return self._phase

    @phase.setter
    def phase(self, value: Phase) -> None:
        with self.lock:
            if value is self._phase:
                return
            self._phase = value
        self.notify("phase")

    # ------------------------------------------------------------- derived
    @property
    def current_task(self) -> Optional[PlanTask]:
        plan = self.plan
        index = self.current_task_index
        if plan is None or index is None or not 0 <= index < len(plan.tasks):
            return None
        return plan.tasks[index]

    @property
    def progress(self) -> float:
        """Fraction of tasks finished, counting half of the task in flight."""

        plan = self.plan
        if plan is None or not plan.tasks:
            return 0.0
        finished = sum(
            1 for task in plan.tasks if task.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
        )
        bonus = 0.5 if self._phase is Phase.EXECUTING_TASK else 0.0
        return min((finished + bonus) / len(plan.tasks), 1.0)

    @property
    def is_running(self) -> bool:
        return self._phase.is_running

    @property
    def can_pause(self) -> bool:
        return self.is_running and self._phase is not Phase.WAITING_FOR_USER

    @property
    def can_resume(self) -> bool:
        return self._phase is Phase.PAUSED

    @property
    def can_stop(self) -> bool:
        return self._phase not in {Phase.IDLE, Phase.COMPLETED, Phase.FAILED}

    @property
    def can_start(self) -> bool:
        return self._phase is Phase.IDLE

    @property
    def has_unrecoverable_error(self) -> bool:
        return any(not error.is_recoverable for error in self.errors)

    @property
    def elapsed_time(self) -> Optional[float]:
        if self.start_time is None:
            return None
        return time.monotonic() - self.start_time

    @property
    def is_manual_input_available(self) -> bool:
        return (
            self.session_id is not None
            and not self._phase.is_terminal
            and self._phase is not Phase.IDLE
        )

    @property
    def appears_stuck(self) -> bool:
        session = self.interview_session
        return (
            self._phase is Phase.CONDUCTING_INTERVIEW
            and self.pending_question is None
            and (session is None or not session.is_complete)
        )

    @property
    def has_queued_questions(self) -> bool:
        return bool(self.question_queue)

    # ------------------------------------------------------------- mutation
    def reset(self) -> None:
        """Return the context to a fresh, idle state."""

        with self.lock:
            self.project_path = None
            self.logs.clear()
            self.errors.clear()
            self.project_configuration = ProjectConfiguration()
            self._clear_run_state()
        self.notify("phase")

    def reset_for_new_feature(self) -> None:
        """Clear run state but keep the log, marking the boundary with a separator."""

        with self.lock:
            self.logs.append(
                LogEntry(phase=Phase.IDLE, type=LogType.SEPARATOR, message="─── New Feature Session ───")
            )
            self.errors.clear()
            self._clear_run_state()
        self.notify("phase")

    def add_log(self, type: LogType, message: str) -> LogEntry:
        with self.lock:
            entry = LogEntry(phase=self._phase, type=type, message=message)
            self.logs.append(entry)
        LOGGER.debug("[%s] %s: %s", entry.phase.value, type.value, message)
        self.notify("log")
        return entry

    def add_error(
        self,
        message: str,
        *,
        underlying_error: Optional[str] = None,
        is_recoverable: bool = False,
    ) -> ExecutionError:
        with self.lock:
            error = ExecutionError(
                phase=self._phase,
                message=message,
                underlying_error=underlying_error,
                is_recoverable=is_recoverable,
            )
            self.errors.append(error)
        self.notify("error")
        return error

    def update_task_status(self, status: TaskStatus) -> None:
        with self.lock:
            task = self.current_task
            if task is None:
                return
            task.status = status
        self.notify("plan")

    def advance_to_next_task(self) -> bool:
        """Move to the next task; return ``False`` when none remain."""

        with self.lock:
            if self.plan is None or self.current_task_index is None:
                return False
            if self.current_task_index + 1 < len(self.plan.tasks):
                self.current_task_index += 1
                return True
            return False

    def accumulate_usage(self, input_tokens: int, output_tokens: int) -> None:
        with self.lock:
            self.total_input_tokens += input_tokens
            self.total_output_tokens += output_tokens

    def mark_started(self) -> None:
        with self.lock:
            self.start_time = time.monotonic()
            self.started_at = utc_now()

    def enqueue_question(self, question: PendingQuestion) -> bool:
        """Make ``question`` current, or queue it behind the current one.

        Returns ``True`` when the question became the current one.
        """

        with self.lock:
            if self.pending_question is None:
                self.pending_question = question
                current = True
            else:
                self.question_queue.append(question)
                current = False
        self.notify("question")
        return current

    def promote_next_question(self) -> Optional[PendingQuestion]:
        with self.lock:
            self.pending_question = self.question_queue.popleft() if self.question_queue else None
            promoted = self.pending_question
        self.notify("question")
        return promoted

    def clear_pending_prompts(self) -> None:
        """Drop pending questions and failures so nothing can resume the run."""

        with self.lock:
            self.pending_question = None
            self.question_queue.clear()
            self.question_origin_phase = None
            self.current_interview_question = None
            self.pending_task_failure = None
        self.notify("question")


__all__ = [
    "ContextListener",
    "ExecutionContext",
    "MAX_BUILD_FIX_ATTEMPTS",
    "MAX_ERROR_ENTRIES",
    "MAX_LOG_ENTRIES",
    "MAX_TEST_FIX_ATTEMPTS",
]
