from __future__ import annotations

from pathlib import Path

import pytest

from taskloop.models.agent_client import (
    AgentClientError,
    AgentExecutableNotFoundError,
    AgentNoResultError,
    AgentProcessError,
    ProcessErrorKind,
)
from taskloop.phases import Phase
from taskloop.policy.classifier import KeywordTaskClassifier
from taskloop.policy.context_budget import ContextBudgetMonitor
from taskloop.policy.failures import FailureDecision, TaskFailureHandler
from taskloop.policy.retry import RetryPolicy
from taskloop.settings import AutonomousConfiguration, FailurePolicy, RetryConfiguration
from taskloop.state.context import ExecutionContext
from taskloop.state.schema import Plan, PlanTask, TaskFailureResponse, TaskStatus


# ------------------------------------------------------------------- retry
def test_retry_delay_grows_and_caps() -> None:
    policy = RetryPolicy(RetryConfiguration(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0))

    assert [policy.delay(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (AgentProcessError(ProcessErrorKind.TIMED_OUT), True),
        (AgentProcessError(ProcessErrorKind.INTERRUPTED), True),
        (AgentProcessError(ProcessErrorKind.NON_ZERO_EXIT, exit_code=1), True),
        (AgentProcessError(ProcessErrorKind.NON_ZERO_EXIT, exit_code=2), False),
        (AgentProcessError(ProcessErrorKind.OUTPUT_READ_ERROR), False),
        (AgentExecutableNotFoundError("missing"), False),
        (AgentNoResultError(), False),
        (ValueError("not an agent error"), False),
    ],
)
def test_retryability_by_error(error: BaseException, retryable: bool) -> None:
    assert RetryPolicy.is_retryable(error) is retryable


def test_should_retry_counts_total_attempts() -> None:
    policy = RetryPolicy(RetryConfiguration(max_attempts=3))
    error = AgentProcessError(ProcessErrorKind.TIMED_OUT)

    assert policy.should_retry(error, 1)
    assert policy.should_retry(error, 2)
    assert not policy.should_retry(error, 3)
    assert not policy.should_retry(AgentClientError("boom"), 1)


def test_process_error_messages() -> None:
    assert str(AgentProcessError(ProcessErrorKind.TIMED_OUT)) == "Agent process timed out"
    exited = AgentProcessError(ProcessErrorKind.NON_ZERO_EXIT, exit_code=2, stderr="bad flag\n")
    assert str(exited) == "Agent process exited with code 2: bad flag"


# ------------------------------------------------------------------ budget
def test_budget_tracks_latest_prompt_size() -> None:
    monitor = ContextBudgetMonitor()

    assert monitor.remaining_fraction == 1.0
    monitor.record_usage(50_000)
    monitor.record_usage(100_000)
    assert monitor.prompt_tokens == 100_000
    assert monitor.remaining_fraction == pytest.approx(0.5)
    assert not monitor.is_low


def test_budget_low_only_hands_off_in_task_phases() -> None:
    monitor = ContextBudgetMonitor()
    monitor.record_usage(185_000)

    assert monitor.is_low
    assert monitor.should_hand_off(Phase.EXECUTING_TASK)
    assert monitor.should_hand_off(Phase.FIXING_TEST_ERRORS)
    assert not monitor.should_hand_off(Phase.GENERATING_INITIAL_PLAN)
    assert not monitor.should_hand_off(Phase.EXECUTING_TASK, in_progress=True)


def test_budget_clamps_and_resets() -> None:
    monitor = ContextBudgetMonitor(window_size=1_000)
    monitor.record_usage(5_000)

    assert monitor.remaining_fraction == 0.0
    assert monitor.used_fraction == 1.0
    monitor.reset()
    assert monitor.prompt_tokens == 0
    assert monitor.remaining_fraction == 1.0


def test_budget_rejects_empty_window() -> None:
    with pytest.raises(ValueError):
        ContextBudgetMonitor(window_size=0)


# --------------------------------------------------------------- failures
def _context_with_task(autonomous: AutonomousConfiguration) -> ExecutionContext:
    context = ExecutionContext()
    context.project_path = Path(".")
    context.autonomous_config = autonomous
    context.plan = Plan(tasks=[PlanTask(number=1, title="First"), PlanTask(number=2, title="Second")])
    context.current_task_index = 0
    context.phase = Phase.EXECUTING_TASK
    return context


def test_failure_handler_retries_then_skips() -> None:
    config = AutonomousConfiguration(enabled=True, failure_policy=FailurePolicy.RETRY_THEN_SKIP, max_task_retries=2)
    context = _context_with_task(config)
    handler = TaskFailureHandler()

    assert handler.handle(context, "boom") is FailureDecision.RETRY
    assert handler.handle(context, "boom") is FailureDecision.RETRY
    decision = handler.handle(context, "boom")

    assert decision is FailureDecision.SKIP
    assert decision.continues_loop
    assert context.plan.tasks[0].status is TaskStatus.SKIPPED
    assert context.phase is Phase.CLEARING_CONTEXT
    assert context.task_failure_count == 0


def test_failure_handler_stop_policy() -> None:
    config = AutonomousConfiguration(enabled=True, failure_policy=FailurePolicy.RETRY_THEN_STOP, max_task_retries=0)
    context = _context_with_task(config)

    decision = TaskFailureHandler().handle(context, "boom")

    assert decision is FailureDecision.STOP
    assert not decision.continues_loop
    assert context.plan.tasks[0].status is TaskStatus.FAILED
    assert context.phase is Phase.FAILED


def test_failure_handler_waits_for_user_when_not_autonomous() -> None:
    config = AutonomousConfiguration(failure_policy=FailurePolicy.RETRY_THEN_SKIP)
    context = _context_with_task(config)
    handler = TaskFailureHandler()

    decision = handler.handle(context, "compile error")

    assert decision is FailureDecision.WAIT_FOR_USER
    assert context.phase is Phase.WAITING_FOR_USER
    failure = context.pending_task_failure
    assert failure is not None
    assert (failure.task_number, failure.task_title, failure.error) == (1, "First", "compile error")
    assert context.task_failure_count == 0

    assert handler.apply_response(context, TaskFailureResponse.RETRY) is FailureDecision.RETRY
    assert context.pending_task_failure is None
    assert context.phase is Phase.EXECUTING_TASK


def test_record_success_resets_counter() -> None:
    config = AutonomousConfiguration(enabled=True, failure_policy=FailurePolicy.RETRY_THEN_SKIP, max_task_retries=3)
    context = _context_with_task(config)
    handler = TaskFailureHandler()
    handler.handle(context, "boom")

    handler.record_success(context)

    assert context.task_failure_count == 0


# ------------------------------------------------------------- classifier
@pytest.mark.parametrize(
    ("title", "description", "expected"),
    [
        ("Add settings screen", "", True),
        ("Persist records", "Render a progress indicator while saving", True),
        ("Parse CSV rows", "Handle quoted fields", False),
        ("Refactor Layout engine", "", True),
    ],
)
def test_default_keywords_match_title_or_description(title: str, description: str, expected: bool) -> None:
    task = PlanTask(number=1, title=title, description=description)

    assert KeywordTaskClassifier().is_ui_task(task) is expected


def test_custom_keywords_are_normalised() -> None:
    classifier = KeywordTaskClassifier.from_keywords(["  Widget ", "", "CHART"])
    task = PlanTask(number=1, title="Draw the chart")

    assert classifier.keywords == ("widget", "chart")
    assert classifier.is_ui_task(task)
    assert not classifier.is_ui_task(PlanTask(number=2, title="Store samples"))
