from __future__ import annotations

from pathlib import Path
from typing import Optional

from fakes import (
    PLAN_TEXT,
    FakeAgentClient,
    FakeBuildTestRunner,
    FakeCall,
    FakeReply,
    build_engine,
    text_message,
)
from taskloop.phases import Phase
from taskloop.settings import AutonomousConfiguration

SUMMARY_JSON = (
    '{"progressDescription": "Parser skeleton written", '
    '"filesModified": ["src/parser.py"], "pendingWork": "Handle empty files"}'
)


def _exhausting_first_task(summary_text: str):
    state = {"exhausted": False}

    def responder(call: FakeCall) -> Optional[FakeReply]:
        if call.kind == "task" and not state["exhausted"]:
            state["exhausted"] = True
            return FakeReply(messages=[text_message("halfway there", prompt_tokens=190_000)])
        if call.kind == "summary":
            return FakeReply(text=summary_text)
        return None

    return responder


def test_low_context_budget_hands_off_to_fresh_session(tmp_path: Path) -> None:
    agent = FakeAgentClient(responder=_exhausting_first_task(SUMMARY_JSON))
    harness = build_engine(tmp_path, agent)

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert harness.agent.interrupts == 1
    assert harness.committer.messages[0] == "WIP: Task 1 - Parse records (context handoff)"
    assert harness.committer.messages[1] == "feat: implement Parse records"
    assert len(harness.committer.messages) == 10
    assert list(harness.context.errors) == []
    assert harness.delays == []

    summary_calls = harness.agent.calls_of("summary")
    assert len(summary_calls) == 1
    assert summary_calls[0].session_id is None

    reseeded = harness.agent.calls_of("task")[1]
    assert reseeded.session_id is None
    assert reseeded.mentions("[CONTINUATION FROM PREVIOUS SESSION]")
    assert reseeded.mentions("Parser skeleton written")
    assert reseeded.mentions("- src/parser.py")
    assert "Resuming task with continuation context" in harness.log_messages()
    assert harness.context.continuation_summary is None


def test_unparseable_summary_uses_raw_text(tmp_path: Path) -> None:
    agent = FakeAgentClient(responder=_exhausting_first_task("Parsed half the rows, edge cases left."))
    harness = build_engine(tmp_path, agent)

    harness.engine.start()

    reseeded = harness.agent.calls_of("task")[1]
    assert reseeded.mentions("Previous Progress:\nParsed half the rows, edge cases left.")
    assert reseeded.mentions("Continue implementing Parse records as described in the task requirements.")
    assert harness.context.phase is Phase.COMPLETED


def test_failed_summary_uses_default_progress(tmp_path: Path) -> None:
    def responder(call: FakeCall) -> Optional[FakeReply]:
        if call.kind == "summary":
            return FakeReply(text="", is_error=True)
        return None

    state = {"exhausted": False}

    def exhausting(call: FakeCall) -> Optional[FakeReply]:
        if call.kind == "task" and not state["exhausted"]:
            state["exhausted"] = True
            return FakeReply(messages=[text_message("halfway there", prompt_tokens=195_000)])
        return responder(call)

    harness = build_engine(tmp_path, FakeAgentClient(responder=exhausting))

    harness.engine.start()

    reseeded = harness.agent.calls_of("task")[1]
    assert reseeded.mentions("Previous session was interrupted due to context limits.")
    assert harness.context.phase is Phase.COMPLETED


def test_budget_is_not_checked_during_read_only_phases(tmp_path: Path) -> None:
    def responder(call: FakeCall) -> Optional[FakeReply]:
        if call.kind == "plan":
            return FakeReply(text=PLAN_TEXT, messages=[text_message(PLAN_TEXT, prompt_tokens=199_000)])
        return None

    harness = build_engine(tmp_path, FakeAgentClient(responder=responder))

    harness.engine.start()

    assert harness.agent.interrupts == 0
    assert harness.context.phase is Phase.COMPLETED


def test_build_failure_is_fixed_and_rebuilt(tmp_path: Path) -> None:
    runner = FakeBuildTestRunner(build_results=[False, True])
    autonomous = AutonomousConfiguration(run_build_after_commit=True)
    harness = build_engine(tmp_path, autonomous=autonomous, runner=runner)

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert runner.builds == 4
    fixes = harness.agent.calls_of("fix_build")
    assert len(fixes) == 1
    assert fixes[0].mentions("error: cannot find symbol")
    assert "Build failed, attempting to fix errors" in harness.log_messages()
    assert "fix: resolve build errors for Parse records" in harness.committer.messages
    assert [error.is_recoverable for error in harness.context.errors] == [True]


def test_build_that_never_passes_fails_run(tmp_path: Path) -> None:
    runner = FakeBuildTestRunner(default_build=False)
    autonomous = AutonomousConfiguration(run_build_after_commit=True)
    harness = build_engine(tmp_path, autonomous=autonomous, runner=runner)

    harness.engine.start()

    assert harness.context.phase is Phase.FAILED
    assert len(harness.agent.calls_of("fix_build")) == 3
    assert runner.builds == 4
    assert "Max build fix attempts reached" in harness.log_messages()
    assert harness.task_statuses()[0] == "failed"
    assert harness.agent.calls_of("review") == []


def test_test_failure_is_fixed_and_rerun(tmp_path: Path) -> None:
    runner = FakeBuildTestRunner(test_results=[False])
    autonomous = AutonomousConfiguration(run_tests_after_commit=True)
    harness = build_engine(tmp_path, autonomous=autonomous, runner=runner)

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert runner.test_runs == 4
    fixes = harness.agent.calls_of("fix_tests")
    assert len(fixes) == 1
    assert fixes[0].mentions("1 failed, 4 passed")
    assert "Tests failed, attempting to fix" in harness.log_messages()
    assert "fix: resolve test failures for Parse records" in harness.committer.messages


def test_gates_are_skipped_when_disabled(tmp_path: Path) -> None:
    runner = FakeBuildTestRunner(default_build=False, default_tests=False)
    harness = build_engine(tmp_path, runner=runner)

    harness.engine.start()

    assert harness.context.phase is Phase.COMPLETED
    assert runner.builds == 0
    assert runner.test_runs == 0
