from __future__ import annotations

from pathlib import Path

import pytest

from fakes import PLAN_TEXT, FakeAgentClient, FakeCommitter, FakeReply, build_engine
from taskloop.engine import EngineErrorKind, ExecutionEngineError
from taskloop.models.agent_client import AgentExecutableNotFoundError, PermissionMode
from taskloop.phases import Phase
from taskloop.settings import RetryConfiguration, TimeoutConfiguration
from taskloop.tools.plans import PlanParser


def test_full_run_processes_every_task_in_order(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert harness.task_statuses() == ["completed", "completed", "completed"]
    assert [call.kind for call in harness.agent.calls] == [
        "interview",
        "plan",
        "rewrite",
        "task",
        "review",
        "tests",
        "task",
        "review",
        "tests",
        "task",
        "review",
        "tests",
    ]
    assert harness.committer.messages[:3] == [
        "feat: implement Parse records",
        "refactor: code review fixes for Parse records",
        "test: add tests for Parse records",
    ]
    assert len(harness.committer.messages) == 9
    assert harness.context.current_task_index is None
    assert "All tasks completed" in harness.log_messages()


def test_permission_modes_follow_phase(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    harness.engine.start()

    modes = {call.kind: call.permission_mode for call in harness.agent.calls}
    assert modes["interview"] is PermissionMode.READ_ONLY
    assert modes["plan"] is PermissionMode.READ_ONLY
    assert modes["rewrite"] is PermissionMode.READ_ONLY
    assert modes["task"] is PermissionMode.ACCEPT_EDITS
    assert modes["tests"] is PermissionMode.ACCEPT_EDITS


def test_editing_calls_use_execution_timeout(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)
    harness.context.timeout_configuration = TimeoutConfiguration(plan_mode=120.0, execution=600.0)

    harness.engine.start()

    timeouts = {call.kind: call.timeout for call in harness.agent.calls}
    assert timeouts["interview"] == 120.0
    assert timeouts["plan"] == 120.0
    assert timeouts["task"] == 600.0
    assert timeouts["review"] == 600.0
    assert timeouts["tests"] == 600.0


def test_session_cleared_between_tasks(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    harness.engine.start()

    task_calls = harness.agent.calls_of("task")
    assert [call.session_id for call in task_calls] == [harness.agent.session_id, None, None]
    assert "Moving to task 2: Write exporter" in harness.log_messages()


def test_plan_is_saved_to_project_root(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    harness.engine.start()

    saved = PlanParser().parse_file(tmp_path / "plan.md")
    assert [task.title for task in saved.tasks] == ["Parse records", "Write exporter", "Add command flag"]
    assert all(task.status.value == "completed" for task in saved.tasks)


def test_zero_tasks_fails_run(tmp_path: Path) -> None:
    agent = FakeAgentClient(plan_text="I could not come up with a plan.")
    harness = build_engine(tmp_path, agent)

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert any(error.message == "No tasks found in plan" for error in harness.context.errors)
    assert harness.agent.calls_of("task") == []


def test_transient_failures_are_retried_with_backoff(tmp_path: Path) -> None:
    agent = FakeAgentClient(failures_before_success=2)
    harness = build_engine(tmp_path, agent)

    harness.engine.start()

    retry_logs = [message for message in harness.log_messages() if "retrying in" in message]
    assert retry_logs == [
        "Interview failed (attempt 1/3), retrying in 1s...",
        "Interview failed (attempt 2/3), retrying in 2s...",
    ]
    assert harness.delays == [1.0, 2.0]
    assert "Interview succeeded on attempt 3" in harness.log_messages()
    assert harness.context.phase is Phase.COMPLETED


def test_retries_exhausted_during_interview_fail_the_run(tmp_path: Path) -> None:
    agent = FakeAgentClient(failures_before_success=5)
    retry = RetryConfiguration(max_attempts=2, initial_delay=0.5)
    harness = build_engine(tmp_path, agent, retry=retry)

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert harness.delays == [0.5]
    error = harness.context.errors[-1]
    assert error.message == "Execution failed during conductingInterview"
    assert not error.is_recoverable


def test_fatal_agent_error_is_not_retried(tmp_path: Path) -> None:
    agent = FakeAgentClient(
        failures_before_success=1,
        failure=AgentExecutableNotFoundError("Agent executable not found: claude"),
    )
    harness = build_engine(tmp_path, agent)

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert harness.delays == []
    assert len(harness.agent.calls) == 1
    assert "Interview failed after 1 attempt(s): Agent executable not found: claude" in harness.log_messages()


def test_error_result_during_plan_generation_fails_run(tmp_path: Path) -> None:
    def responder(call):
        if call.kind == "plan":
            return FakeReply(text="overloaded", is_error=True)
        return None

    harness = build_engine(tmp_path, FakeAgentClient(responder=responder))

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert harness.context.errors[-1].message == "Execution failed during generatingInitialPlan"


def test_start_rejects_missing_project_path() -> None:
    harness = build_engine(Path("."))
    harness.context.project_path = None

    with pytest.raises(ExecutionEngineError) as excinfo:
        harness.engine.start()

    assert excinfo.value.kind is EngineErrorKind.NO_PROJECT_PATH
    assert str(excinfo.value) == "No project path selected"
    assert harness.context.phase is Phase.IDLE
    assert list(harness.context.logs) == []


def test_start_rejects_blank_feature(tmp_path: Path) -> None:
    harness = build_engine(tmp_path, feature="   ")

    with pytest.raises(ExecutionEngineError, match="Feature description cannot be empty"):
        harness.engine.start()

    assert harness.context.phase is Phase.IDLE
    assert harness.agent.calls == []


def test_existing_plan_resumes_at_first_unfinished_task(tmp_path: Path) -> None:
    text = PLAN_TEXT.replace("- [ ] Handle empty files", "- [x] Handle empty files")
    harness = build_engine(tmp_path)
    harness.context.existing_plan = PlanParser().parse_text(text)

    harness.engine.start_with_existing_plan()

    assert "Resuming from task 2: Write exporter" in harness.log_messages()
    assert harness.context.phase is Phase.COMPLETED
    assert [call.kind for call in harness.agent.calls][:1] == ["task"]
    assert len(harness.agent.calls_of("task")) == 2
    assert harness.agent.calls_of("interview") == []


def test_existing_plan_already_done_completes_immediately(tmp_path: Path) -> None:
    text = PLAN_TEXT.replace("- [ ]", "- [x]")
    harness = build_engine(tmp_path)
    harness.context.existing_plan = PlanParser().parse_text(text)

    harness.engine.start_with_existing_plan()

    assert harness.context.phase is Phase.COMPLETED
    assert "All tasks already completed" in harness.log_messages()
    assert harness.agent.calls == []


def test_existing_plan_required(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    with pytest.raises(ExecutionEngineError, match="No existing plan loaded"):
        harness.engine.start_with_existing_plan()


def test_ui_task_skips_test_writing(tmp_path: Path) -> None:
    plan = (
        "## Task 1: Parse records\n"
        "**Description:** Read rows from the source file\n\n"
        "## Task 2: Style the settings screen\n"
        "**Description:** Align the form controls\n"
    )
    harness = build_engine(tmp_path, FakeAgentClient(plan_text=plan))

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert "Skipping tests for UI-related task: Style the settings screen" in harness.log_messages()
    assert len(harness.agent.calls_of("tests")) == 1
    assert "test: add tests for Style the settings screen" not in harness.committer.messages


def test_commit_failure_fails_run(tmp_path: Path) -> None:
    harness = build_engine(tmp_path, committer=FakeCommitter(fail=True))

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert harness.context.errors[-1].message == "Execution failed during committingImplementation"
    assert harness.task_statuses()[0] == "failed"


def test_clean_tree_commit_is_not_an_error(tmp_path: Path) -> None:
    harness = build_engine(tmp_path, committer=FakeCommitter(clean=True))

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert "No changes to commit" in harness.log_messages()


def test_usage_and_cost_accumulate(tmp_path: Path) -> None:
    harness = build_engine(tmp_path)

    harness.engine.start()

    calls = len(harness.agent.calls)
    assert harness.context.total_cost == pytest.approx(0.01 * calls)
    assert harness.context.total_input_tokens == 100 * calls
    assert harness.context.total_output_tokens == 20 * calls
