"""Escalation policy for tasks whose agent retries are exhausted."""

from __future__ import annotations

from enum import Enum

from ..phases import Phase
from ..settings import FailurePolicy
from ..state.context import ExecutionContext
from ..state.schema import LogType, PendingTaskFailure, TaskFailureResponse, TaskStatus


class FailureDecision(str, Enum):
    """What the engine loop should do after a task failure was handled."""

    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"
    WAIT_FOR_USER = "waitForUser"

    @property
    def continues_loop(self) -> bool:
        return self in {FailureDecision.RETRY, FailureDecision.SKIP}


class TaskFailureHandler:
    """Apply the autonomous failure policy to the current task of a context.

    Callers hold ``context.lock``. The handler only touches the current task's
    status, the per-task failure counter, the pending failure and the phase.
    """

    def handle(self, context: ExecutionContext, error: str) -> FailureDecision:
        config = context.autonomous_config
        task = context.current_task

        if task is not None and config.enabled and config.failure_policy != FailurePolicy.PAUSE_FOR_USER:
            context.task_failure_count += 1
            context.add_log(
                LogType.INFO,
                f"Task failure {context.task_failure_count}/{config.max_task_retries}",
            )
            if context.task_failure_count <= config.max_task_retries:
                context.add_log(LogType.INFO, "Auto-retrying task...")
                context.current_retry_attempt = 0
                context.phase = Phase.EXECUTING_TASK
                return FailureDecision.RETRY

            context.task_failure_count = 0
            if config.failure_policy == FailurePolicy.RETRY_THEN_SKIP:
                context.add_log(LogType.INFO, "Max retries exceeded, skipping task")
                context.update_task_status(TaskStatus.SKIPPED)
                context.phase = Phase.CLEARING_CONTEXT
                return FailureDecision.SKIP

            context.add_log(LogType.ERROR, "Max retries exceeded, stopping execution")
            context.update_task_status(TaskStatus.FAILED)
            context.phase = Phase.FAILED
            return FailureDecision.STOP

        context.pending_task_failure = PendingTaskFailure(
            task_number=task.number if task is not None else 0,
            task_title=task.title if task is not None else "Unknown task",
            error=error,
        )
        context.phase = Phase.WAITING_FOR_USER
        context.add_log(LogType.INFO, "Waiting for user input on task failure")
        context.notify("failure")
        return FailureDecision.WAIT_FOR_USER

    def record_success(self, context: ExecutionContext) -> None:
        context.task_failure_count = 0

    def apply_response(
        self, context: ExecutionContext, response: TaskFailureResponse
    ) -> FailureDecision:
        """Resolve the pending failure with the user's ``response``."""

        context.pending_task_failure = None
        context.add_log(LogType.INFO, f"User selected: {response.value}")
        context.notify("failure")

        if response == TaskFailureResponse.RETRY:
            context.current_retry_attempt = 0
            context.phase = Phase.EXECUTING_TASK
            context.add_log(LogType.INFO, "Retrying task")
            return FailureDecision.RETRY

        if response == TaskFailureResponse.SKIP:
            context.update_task_status(TaskStatus.SKIPPED)
            context.add_log(LogType.INFO, "Skipping task")
            context.phase = Phase.CLEARING_CONTEXT
            return FailureDecision.SKIP

        context.update_task_status(TaskStatus.FAILED)
        context.phase = Phase.FAILED
        context.add_log(LogType.INFO, "Execution stopped by user after task failure")
        return FailureDecision.STOP


__all__ = ["FailureDecision", "TaskFailureHandler"]
