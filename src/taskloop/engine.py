"""Phase state machine driving the coding agent through a feature."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models.agent_client import AgentClient, AgentClientError, AgentResult, PermissionMode
from .models.messages import AssistantMessage, ResultMessage, StreamMessage, SystemMessage, TextBlock, ToolUseBlock
from .phases import READ_ONLY_PHASES, Phase
from .policy.classifier import KeywordTaskClassifier
from .policy.context_budget import ContextBudgetMonitor
from .policy.failures import TaskFailureHandler
from .policy.retry import RetryPolicy
from .prompts import (
    INTERVIEW_COMPLETE_SENTINEL,
    MAX_INTERVIEW_QUESTIONS,
    render_continuation_summary_prompt,
    render_fix_build_prompt,
    render_fix_tests_prompt,
    render_interview_prompt,
    render_plan_prompt,
    render_review_prompt,
    render_rewrite_plan_prompt,
    render_smart_answer_prompt,
    render_task_prompt,
    render_tests_prompt,
)
from .settings import Preferences, ProjectConfiguration
from .state.context import MAX_BUILD_FIX_ATTEMPTS, MAX_TEST_FIX_ATTEMPTS, ExecutionContext
from .state.schema import (
    CommandResult,
    ContinuationSummary,
    InterviewSession,
    LogType,
    PendingQuestion,
    PlanTask,
    QuestionOption,
    TaskFailureResponse,
    TaskStatus,
)
from .tools.build_test import BuildTestError, BuildTestRunner
from .tools.plans import PLAN_FILE_NAME, PlanFileError, PlanParser
from .tools.vcs import CommitResult, GitCommitter, GitError

LOGGER = logging.getLogger(__name__)

_SUMMARY_FALLBACK_PROGRESS = "Previous session was interrupted due to context limits."
_SUMMARY_RAW_LIMIT = 500
_FREEFORM_FALLBACK_ANSWER = "Continue"


class EngineErrorKind(str, Enum):
    NO_PROJECT_PATH = "no_project_path"
    EMPTY_FEATURE_DESCRIPTION = "empty_feature_description"
    NOT_PAUSED = "not_paused"
    NO_SESSION_ID = "no_session_id"
    NO_EXISTING_PLAN = "no_existing_plan"
    EXECUTION_FAILED = "execution_failed"


_ERROR_MESSAGES = {
    EngineErrorKind.NO_PROJECT_PATH: "No project path selected",
    EngineErrorKind.EMPTY_FEATURE_DESCRIPTION: "Feature description cannot be empty",
    EngineErrorKind.NOT_PAUSED: "Cannot resume: execution is not paused",
    EngineErrorKind.NO_SESSION_ID: "Cannot answer question: no active session",
    EngineErrorKind.NO_EXISTING_PLAN: "No existing plan loaded",
}


class ExecutionEngineError(RuntimeError):
    """Raised for rejected control calls and for failed phase steps."""

    def __init__(self, kind: EngineErrorKind, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        if kind == EngineErrorKind.EXECUTION_FAILED:
            message = f"Execution failed during {detail or 'unknown phase'}"
        else:
            message = _ERROR_MESSAGES[kind]
        super().__init__(message)


class Committer(Protocol):
    def commit_all(self, message: str, directory: Any) -> CommitResult: ...


class BuildTestGate(Protocol):
    def run_build(self, directory: Any, config: ProjectConfiguration) -> CommandResult: ...

    def run_tests(self, directory: Any, config: ProjectConfiguration) -> CommandResult: ...


SleepFunction = Callable[[float], None]

# Failures a phase step may raise that the loop turns into logged, recorded errors.
_PHASE_FAILURES = (ExecutionEngineError, AgentClientError, GitError, PlanFileError, BuildTestError)


@dataclass(slots=True)
class PhaseStep:
    """How to run one phase: the retried operation name and its callable."""

    operation: Optional[str]
    runner: Callable[[Phase], None]


class _SummaryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    progress_description: str = Field(alias="progressDescription")
    files_modified: List[str] = Field(default_factory=list, alias="filesModified")
    pending_work: str = Field(alias="pendingWork")


class _AnswerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    choice: str
    reasoning: str = ""


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Decode the span between the first ``{`` and the last ``}`` of ``text``."""

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def match_option(choice: str, options: List[QuestionOption]) -> Optional[str]:
    """Resolve ``choice`` to an option label, exactly first, then ignoring case."""

    for option in options:
        if option.label == choice:
            return option.label
    lowered = choice.strip().lower()
    for option in options:
        if option.label.lower() == lowered:
            return option.label
    return None


class ExecutionEngine:
    """Run one feature through interview, planning and the per-task cycle.

    The loop runs on the caller's thread and returns when the run reaches a
    terminal phase, pauses, or needs the user (question or task failure). The
    control methods may be called from other threads; every read-modify-write
    of the context happens under ``context.lock`` and the lock is never held
    across an agent call.
    """

    def __init__(
        self,
        context: ExecutionContext,
        agent: AgentClient,
        *,
        plan_parser: Optional[PlanParser] = None,
        committer: Optional[Committer] = None,
        build_test_runner: Optional[BuildTestGate] = None,
        preferences: Optional[Preferences] = None,
        failure_handler: Optional[TaskFailureHandler] = None,
        budget: Optional[ContextBudgetMonitor] = None,
        classifier: Optional[KeywordTaskClassifier] = None,
        sleep: Optional[SleepFunction] = None,
    ) -> None:
        self.context = context
        self.agent = agent
        self.plan_parser = plan_parser or PlanParser()
        self.committer: Committer = committer or GitCommitter()
        self.build_test_runner: BuildTestGate = build_test_runner or BuildTestRunner()
        self.preferences = preferences
        self.failure_handler = failure_handler or TaskFailureHandler()
        self.budget = budget or ContextBudgetMonitor()
        self._classifier = classifier
        self._sleep: SleepFunction = sleep or self._interruptible_sleep
        self._wake = threading.Event()

        self._stop_requested = False
        self._pause_requested = False
        self._phase_before_pause: Optional[Phase] = None
        self._question_raised = False
        self._resume_input: Optional[str] = None
        self._collected_answers: List[str] = []
        self._auto_answer_queue: List[PendingQuestion] = []
        self._loop_running = False
        self._loop_requested = False

        self._steps: Dict[Phase, PhaseStep] = {
            Phase.CONDUCTING_INTERVIEW: PhaseStep("Interview", self._conduct_interview),
            Phase.GENERATING_INITIAL_PLAN: PhaseStep("Plan generation", self._generate_initial_plan),
            Phase.REWRITING_PLAN: PhaseStep("Plan rewrite", self._rewrite_plan),
            Phase.EXECUTING_TASK: PhaseStep("Task execution", self._execute_current_task),
            Phase.COMMITTING_IMPLEMENTATION: PhaseStep(None, self._commit_implementation),
            Phase.REVIEWING_CODE: PhaseStep("Code review", self._review_code),
            Phase.COMMITTING_REVIEW: PhaseStep(None, self._commit_review),
            Phase.WRITING_TESTS: PhaseStep("Test writing", self._write_tests),
            Phase.COMMITTING_TESTS: PhaseStep(None, self._commit_tests),
            Phase.CLEARING_CONTEXT: PhaseStep(None, self._clear_context),
            Phase.HANDLING_CONTEXT_EXHAUSTION: PhaseStep(None, self._hand_off_context),
            Phase.RUNNING_BUILD: PhaseStep(None, self._run_build),
            Phase.FIXING_BUILD_ERRORS: PhaseStep("Build fix", self._fix_build_errors),
            Phase.RUNNING_TESTS: PhaseStep(None, self._run_tests),
            Phase.FIXING_TEST_ERRORS: PhaseStep("Test fix", self._fix_test_errors),
        }

    # ------------------------------------------------------------ control
    def start(self) -> None:
        """Begin a new feature run with the requirements interview."""

        ctx = self.context
        with ctx.lock:
            if ctx.project_path is None:
                raise ExecutionEngineError(EngineErrorKind.NO_PROJECT_PATH)
            if not ctx.feature_description.strip():
                raise ExecutionEngineError(EngineErrorKind.EMPTY_FEATURE_DESCRIPTION)
            self._prepare_run()
            ctx.interview_session = InterviewSession(feature_description=ctx.feature_description)
            ctx.mark_started()
            ctx.phase = Phase.CONDUCTING_INTERVIEW
            ctx.add_log(LogType.INFO, "Starting feature interview")
        self._run_loop()

    def start_with_existing_plan(self) -> None:
        """Skip interview and planning and resume the loaded plan."""

        ctx = self.context
        with ctx.lock:
            if ctx.project_path is None:
                raise ExecutionEngineError(EngineErrorKind.NO_PROJECT_PATH)
            if ctx.existing_plan is None:
                raise ExecutionEngineError(EngineErrorKind.NO_EXISTING_PLAN)
            self._prepare_run()
            ctx.plan = ctx.existing_plan.model_copy(deep=True)
            ctx.mark_started()
            ctx.add_log(LogType.INFO, "Starting execution from existing plan")
            index = ctx.plan.first_unfinished_index()
            if index is None:
                ctx.current_task_index = None
                ctx.phase = Phase.COMPLETED
                ctx.add_log(LogType.INFO, "All tasks already completed")
                return
            ctx.current_task_index = index
            task = ctx.plan.tasks[index]
            ctx.phase = Phase.EXECUTING_TASK
            ctx.add_log(LogType.INFO, f"Resuming from task {task.number}: {task.title}")
        self._run_loop()

    def pause(self) -> None:
        """Request a pause; an agent call already in flight finishes first."""

        ctx = self.context
        with ctx.lock:
            if not ctx.can_pause:
                return
            self._pause_requested = True
            self._phase_before_pause = ctx.phase
            ctx.phase = Phase.PAUSED
            ctx.add_log(LogType.INFO, "Execution paused")

    def resume(self) -> None:
        ctx = self.context
        with ctx.lock:
            if ctx.phase is not Phase.PAUSED:
                raise ExecutionEngineError(EngineErrorKind.NOT_PAUSED)
            restored = self._phase_before_pause
            if restored is None:
                restored = Phase.EXECUTING_TASK if ctx.current_task is not None else Phase.CONDUCTING_INTERVIEW
            self._pause_requested = False
            self._phase_before_pause = None
            ctx.phase = restored
            ctx.add_log(LogType.INFO, "Execution resumed")
        self._run_loop()

    def stop(self) -> None:
        """Terminate the run; calling it again after the run ended does nothing."""

        ctx = self.context
        with ctx.lock:
            if not ctx.can_stop:
                return
            self._stop_requested = True
            self._pause_requested = False
            self._phase_before_pause = None
            self._collected_answers = []
            self._resume_input = None
            ctx.clear_pending_prompts()
            ctx.phase = Phase.FAILED
            ctx.add_log(LogType.INFO, "Execution stopped by user")
            ctx.add_error("Execution stopped by user", is_recoverable=False)
        self._wake.set()
        self.agent.terminate()

    def answer_question(self, answer: str) -> None:
        """Answer the pending question and continue the run."""

        ctx = self.context
        with ctx.lock:
            pending = ctx.pending_question
            if pending is None or ctx.phase.is_terminal:
                LOGGER.debug("Ignoring answer: no question is pending")
                return
            if ctx.session_id is None:
                raise ExecutionEngineError(EngineErrorKind.NO_SESSION_ID)

            interview = ctx.interview_session
            interview_question = ctx.current_interview_question
            if interview_question is not None and interview is not None and not interview.is_complete:
                interview.add_exchange(interview_question, answer)
                ctx.current_interview_question = None
                ctx.add_log(LogType.INFO, f"User answered: {answer}")
                ctx.promote_next_question()
                ctx.question_queue.clear()
                ctx.question_origin_phase = None
                ctx.phase = Phase.CONDUCTING_INTERVIEW
            else:
                ctx.add_log(LogType.INFO, f"User answered: {answer}")
                self._collected_answers.append(self._format_answer(pending, answer))
                following = ctx.promote_next_question()
                if following is not None:
                    return
                origin = ctx.question_origin_phase or Phase.EXECUTING_TASK
                ctx.question_origin_phase = None
                self._resume_input = "\n\n".join(self._collected_answers)
                self._collected_answers = []
                ctx.phase = origin
        self._run_loop()

    def handle_task_failure_response(self, response: TaskFailureResponse | str) -> None:
        """Resolve a task failure that is waiting for the user."""

        ctx = self.context
        choice = TaskFailureResponse(response)
        with ctx.lock:
            if ctx.pending_task_failure is None or ctx.phase.is_terminal:
                LOGGER.debug("Ignoring failure response %s: nothing pending", choice.value)
                return
            decision = self.failure_handler.apply_response(ctx, choice)
        if decision.continues_loop:
            self._run_loop()

    def send_manual_input(self, text: str) -> None:
        """Send free-form input into the current agent session."""

        ctx = self.context
        with ctx.lock:
            if ctx.project_path is None:
                raise ExecutionEngineError(EngineErrorKind.NO_PROJECT_PATH)
            if ctx.session_id is None:
                raise ExecutionEngineError(EngineErrorKind.NO_SESSION_ID)
            ctx.add_log(LogType.INFO, f"User input: {text}")
            phase = ctx.phase
            mode = PermissionMode.READ_ONLY if phase in READ_ONLY_PHASES else PermissionMode.ACCEPT_EDITS
            session_id = ctx.session_id
            project_path = ctx.project_path
            timeout = ctx.timeout_configuration.execution

        result = self.agent.execute(
            text,
            working_directory=project_path,
            permission_mode=mode,
            session_id=session_id,
            timeout=timeout,
            on_message=self._message_handler(phase, interview=phase is Phase.CONDUCTING_INTERVIEW),
        )
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Manual input execution failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "sendManualInput")
        ctx.add_log(LogType.INFO, "Manual input processed successfully")

        with ctx.lock:
            current = ctx.phase
        if current is not Phase.WAITING_FOR_USER and current.is_running:
            self._run_loop()

    # --------------------------------------------------------------- loop
    def _prepare_run(self) -> None:
        ctx = self.context
        self._stop_requested = False
        self._pause_requested = False
        self._phase_before_pause = None
        self._question_raised = False
        self._resume_input = None
        self._collected_answers = []
        self._auto_answer_queue = []
        self._wake.clear()
        self.budget.reset()
        if self.preferences is not None:
            ctx.autonomous_config = self.preferences.autonomous.model_copy(deep=True)
            ctx.retry_configuration = self.preferences.retry.model_copy(deep=True)
            ctx.timeout_configuration = self.preferences.timeouts.model_copy(deep=True)
            ctx.project_configuration = self.preferences.project.model_copy(deep=True)

    def _run_loop(self) -> None:
        """Drive phases until the run suspends; re-entrant calls piggyback."""

        ctx = self.context
        with ctx.lock:
            if self._loop_running:
                self._loop_requested = True
                return
            self._loop_running = True
        try:
            while True:
                self._drive()
                with ctx.lock:
                    if not self._loop_requested:
                        self._loop_running = False
                        return
                    self._loop_requested = False
        except BaseException:
            with ctx.lock:
                self._loop_running = False
                self._loop_requested = False
            raise

    def _drive(self) -> None:
        ctx = self.context
        while True:
            with ctx.lock:
                if ctx.is_handoff_in_progress and ctx.phase.is_active:
                    ctx.phase = Phase.HANDLING_CONTEXT_EXHAUSTION
                phase = ctx.phase
                if self._stop_requested or self._pause_requested or not phase.is_active:
                    return
                ctx.add_log(LogType.INFO, f"Executing phase: {phase.value}")
                self._question_raised = False

            try:
                self._execute_phase(phase)
            except _PHASE_FAILURES as error:
                with ctx.lock:
                    if self._stop_requested:
                        return
                    if ctx.is_handoff_in_progress:
                        ctx.phase = Phase.HANDLING_CONTEXT_EXHAUSTION
                    elif not self._handle_phase_error(phase, error):
                        self._apply_pending_pause()
                        return
                    self._apply_pending_pause()
                continue

            with ctx.lock:
                if self._stop_requested:
                    return
                if self._question_raised:
                    self._question_raised = False
                    self._apply_pending_pause()
                    return
                if ctx.is_handoff_in_progress:
                    ctx.phase = Phase.HANDLING_CONTEXT_EXHAUSTION
                elif ctx.phase is phase or ctx.phase is Phase.PAUSED:
                    self._transition_from(phase)
                self._apply_pending_pause()

    def _apply_pending_pause(self) -> None:
        """Park the loop if ``pause()`` arrived while a step was running."""

        ctx = self.context
        if not self._pause_requested:
            return
        if ctx.phase.is_active:
            self._phase_before_pause = ctx.phase
            ctx.phase = Phase.PAUSED
        elif ctx.phase is not Phase.PAUSED:
            self._pause_requested = False
            self._phase_before_pause = None

    def _execute_phase(self, phase: Phase) -> None:
        step = self._steps.get(phase)
        if step is None:
            LOGGER.warning("No step registered for phase %s", phase.value)
            return
        if step.operation is None:
            step.runner(phase)
            return
        self._with_retry(step.operation, lambda: step.runner(phase))

    def _with_retry(self, operation: str, action: Callable[[], Any]) -> Any:
        ctx = self.context
        policy = RetryPolicy(ctx.retry_configuration)
        attempt = 0
        while True:
            attempt += 1
            ctx.current_retry_attempt = attempt
            try:
                result = action()
            except AgentClientError as error:
                if self._stop_requested or ctx.is_handoff_in_progress:
                    raise
                if not policy.should_retry(error, attempt):
                    ctx.add_log(LogType.ERROR, f"{operation} failed after {attempt} attempt(s): {error}")
                    raise
                delay = policy.delay(attempt)
                ctx.add_log(
                    LogType.INFO,
                    f"{operation} failed (attempt {attempt}/{policy.max_attempts}), "
                    f"retrying in {int(delay)}s...",
                )
                LOGGER.info("Retrying %s in %.1fs after: %s", operation, delay, error)
                self._sleep(delay)
                if self._stop_requested:
                    raise
                continue
            if attempt > 1:
                ctx.add_log(LogType.INFO, f"{operation} succeeded on attempt {attempt}")
            ctx.current_retry_attempt = 0
            return result

    def _interruptible_sleep(self, seconds: float) -> None:
        self._wake.wait(seconds)

    def _handle_phase_error(self, phase: Phase, error: BaseException) -> bool:
        """Record ``error``; return ``True`` when the loop should keep going."""

        ctx = self.context
        recoverable = phase not in READ_ONLY_PHASES
        ctx.add_error(
            f"Execution failed during {phase.value}",
            underlying_error=str(error),
            is_recoverable=recoverable,
        )
        ctx.add_log(LogType.ERROR, f"Phase failed: {error}")
        LOGGER.warning("Phase %s failed: %s", phase.value, error)

        if phase is Phase.EXECUTING_TASK and ctx.current_task is not None:
            decision = self.failure_handler.handle(ctx, str(error))
            return decision.continues_loop

        if phase is Phase.RUNNING_BUILD:
            if ctx.build_attempts > MAX_BUILD_FIX_ATTEMPTS:
                return self._fail_gate("Max build fix attempts reached")
            ctx.add_log(LogType.INFO, "Build failed, attempting to fix errors")
            ctx.phase = Phase.FIXING_BUILD_ERRORS
            return True
        if phase is Phase.FIXING_BUILD_ERRORS:
            if ctx.build_attempts < MAX_BUILD_FIX_ATTEMPTS:
                ctx.add_log(LogType.INFO, "Build fix failed, running the build again")
                ctx.phase = Phase.RUNNING_BUILD
                return True
            return self._fail_gate("Max build fix attempts reached")
        if phase is Phase.RUNNING_TESTS:
            if ctx.test_attempts > MAX_TEST_FIX_ATTEMPTS:
                return self._fail_gate("Max test fix attempts reached")
            ctx.add_log(LogType.INFO, "Tests failed, attempting to fix")
            ctx.phase = Phase.FIXING_TEST_ERRORS
            return True
        if phase is Phase.FIXING_TEST_ERRORS:
            if ctx.test_attempts < MAX_TEST_FIX_ATTEMPTS:
                ctx.add_log(LogType.INFO, "Test fix failed, running the tests again")
                ctx.phase = Phase.RUNNING_TESTS
                return True
            return self._fail_gate("Max test fix attempts reached")

        ctx.update_task_status(TaskStatus.FAILED)
        ctx.phase = Phase.FAILED
        return False

    def _fail_gate(self, message: str) -> bool:
        ctx = self.context
        ctx.add_log(LogType.ERROR, message)
        ctx.update_task_status(TaskStatus.FAILED)
        ctx.phase = Phase.FAILED
        return False

    def _transition_from(self, phase: Phase) -> None:
        ctx = self.context
        autonomous = ctx.autonomous_config
        next_phase: Optional[Phase] = None

        if phase is Phase.CONDUCTING_INTERVIEW:
            session = ctx.interview_session
            if session is not None and session.is_complete:
                next_phase = Phase.GENERATING_INITIAL_PLAN
        elif phase is Phase.GENERATING_INITIAL_PLAN:
            next_phase = Phase.REWRITING_PLAN
        elif phase is Phase.REWRITING_PLAN:
            if ctx.plan is not None and ctx.plan.tasks:
                ctx.current_task_index = 0
                self._save_plan()
                next_phase = Phase.EXECUTING_TASK
            else:
                ctx.add_error("No tasks found in plan", is_recoverable=False)
                next_phase = Phase.FAILED
        elif phase is Phase.EXECUTING_TASK:
            ctx.update_task_status(TaskStatus.COMPLETED)
            self.failure_handler.record_success(ctx)
            next_phase = Phase.COMMITTING_IMPLEMENTATION
        elif phase is Phase.COMMITTING_IMPLEMENTATION:
            if autonomous.run_build_after_commit:
                ctx.build_attempts = 0
                next_phase = Phase.RUNNING_BUILD
            else:
                next_phase = Phase.REVIEWING_CODE
        elif phase is Phase.REVIEWING_CODE:
            next_phase = Phase.COMMITTING_REVIEW
        elif phase is Phase.COMMITTING_REVIEW:
            task = ctx.current_task
            if task is not None and self._is_ui_task(task):
                ctx.add_log(LogType.INFO, f"Skipping tests for UI-related task: {task.title}")
                next_phase = Phase.CLEARING_CONTEXT
            else:
                next_phase = Phase.WRITING_TESTS
        elif phase is Phase.WRITING_TESTS:
            next_phase = Phase.COMMITTING_TESTS
        elif phase is Phase.COMMITTING_TESTS:
            if autonomous.run_tests_after_commit:
                ctx.test_attempts = 0
                next_phase = Phase.RUNNING_TESTS
            else:
                next_phase = Phase.CLEARING_CONTEXT
        elif phase is Phase.CLEARING_CONTEXT:
            if ctx.advance_to_next_task():
                task = ctx.current_task
                if task is not None:
                    ctx.add_log(LogType.INFO, f"Moving to task {task.number}: {task.title}")
                next_phase = Phase.EXECUTING_TASK
            else:
                ctx.add_log(LogType.INFO, "All tasks completed")
                ctx.current_task_index = None
                next_phase = Phase.COMPLETED
        elif phase is Phase.HANDLING_CONTEXT_EXHAUSTION:
            next_phase = Phase.EXECUTING_TASK
        elif phase is Phase.RUNNING_BUILD:
            next_phase = Phase.REVIEWING_CODE
        elif phase is Phase.FIXING_BUILD_ERRORS:
            next_phase = Phase.RUNNING_BUILD
        elif phase is Phase.RUNNING_TESTS:
            next_phase = Phase.CLEARING_CONTEXT
        elif phase is Phase.FIXING_TEST_ERRORS:
            next_phase = Phase.RUNNING_TESTS

        if next_phase is None:
            return
        ctx.phase = next_phase
        ctx.add_log(LogType.INFO, f"Transitioned to phase: {next_phase.value}")

    def _is_ui_task(self, task: PlanTask) -> bool:
        classifier = self._classifier or KeywordTaskClassifier.from_keywords(
            self.context.autonomous_config.ui_keywords
        )
        return classifier.is_ui_task(task)

    # ------------------------------------------------------------- agent IO
    def _call_agent(
        self,
        phase: Phase,
        prompt: str,
        mode: PermissionMode,
        *,
        timeout: float,
        session_id: Optional[str],
        interview: bool = False,
    ) -> AgentResult:
        ctx = self.context
        with ctx.lock:
            resume_input = self._resume_input
            if resume_input is not None:
                prompt = resume_input
                session_id = ctx.session_id
            project_path = ctx.project_path
        if project_path is None:
            raise ExecutionEngineError(EngineErrorKind.NO_PROJECT_PATH)
        result = self.agent.execute(
            prompt,
            working_directory=project_path,
            permission_mode=mode,
            session_id=session_id,
            timeout=timeout,
            on_message=self._message_handler(phase, interview=interview),
        )
        with ctx.lock:
            if resume_input is not None:
                self._resume_input = None
            if result.session_id and not ctx.is_handoff_in_progress:
                ctx.session_id = result.session_id
        return result

    def _message_handler(self, phase: Phase, *, interview: bool) -> Callable[[StreamMessage], None]:
        def _handle(message: StreamMessage) -> None:
            with self.context.lock:
                self._on_message(message, phase, interview=interview)

        return _handle

    def _on_message(self, message: StreamMessage, phase: Phase, *, interview: bool) -> None:
        ctx = self.context
        if self._stop_requested:
            return
        if isinstance(message, SystemMessage):
            if message.session_id:
                ctx.session_id = message.session_id
        elif isinstance(message, AssistantMessage):
            if message.session_id:
                ctx.session_id = message.session_id
            for block in message.message.content:
                if isinstance(block, TextBlock):
                    ctx.add_log(LogType.OUTPUT, block.text)
                    session = ctx.interview_session
                    if interview and session is not None and INTERVIEW_COMPLETE_SENTINEL in block.text:
                        session.mark_complete()
                elif isinstance(block, ToolUseBlock):
                    if block.is_ask_user_question:
                        self._on_ask_user(block, phase, interview=interview)
                    else:
                        ctx.add_log(LogType.TOOL_USE, f"Tool: {block.name}")
            usage = message.message.usage
            if usage is not None:
                self.budget.record_usage(usage.prompt_tokens)
                self._check_context_budget(phase)
        elif isinstance(message, ResultMessage):
            if message.session_id:
                ctx.session_id = message.session_id
            ctx.total_cost += message.total_cost_usd
            ctx.accumulate_usage(message.usage.input_tokens, message.usage.output_tokens)
            if message.is_error:
                ctx.add_log(LogType.ERROR, message.result or "Agent reported an error")
            else:
                ctx.add_log(LogType.RESULT, f"Completed in {message.duration_ms / 1000:.1f}s")

    def _on_ask_user(self, block: ToolUseBlock, phase: Phase, *, interview: bool) -> None:
        ctx = self.context
        payload = block.ask_user_input()
        if payload is None or not payload.questions:
            ctx.add_log(LogType.TOOL_USE, f"Tool: {block.name}")
            return
        questions = [
            PendingQuestion(
                tool_use_id=block.id,
                question=item.question,
                header=item.header,
                options=[QuestionOption(label=option.label, description=option.description) for option in item.options],
                multi_select=item.multi_select,
            )
            for item in payload.questions
        ]
        if interview:
            first = questions[0]
            ctx.current_interview_question = first.question
            self._raise_question(first, phase)
            return
        autonomous = ctx.autonomous_config
        if autonomous.enabled and autonomous.auto_answer:
            self._auto_answer_queue.extend(questions)
            return
        for question in questions:
            self._raise_question(question, phase)

    def _raise_question(self, question: PendingQuestion, phase: Phase) -> None:
        ctx = self.context
        if ctx.enqueue_question(question):
            ctx.question_origin_phase = phase
        ctx.phase = Phase.WAITING_FOR_USER
        self._question_raised = True
        ctx.add_log(LogType.INFO, f"Question from agent: {question.question}")

    @staticmethod
    def _format_answer(question: PendingQuestion, answer: str) -> str:
        if question.header:
            return f"{question.header}: {answer}"
        return answer

    def _check_context_budget(self, phase: Phase) -> None:
        ctx = self.context
        if not self.budget.should_hand_off(phase, in_progress=ctx.is_handoff_in_progress):
            return
        ctx.is_handoff_in_progress = True
        ctx.add_log(
            LogType.INFO,
            f"Context usage at {int(self.budget.used_fraction * 100)}%, handing off to a fresh session",
        )
        LOGGER.info("Context budget low during %s; interrupting agent", phase.value)
        self.agent.interrupt()

    def _process_auto_answers(self, phase: Phase, mode: PermissionMode) -> bool:
        """Answer held questions; return ``True`` when one had to go to the user."""

        ctx = self.context
        while True:
            with ctx.lock:
                if not self._auto_answer_queue or self._stop_requested or ctx.is_handoff_in_progress:
                    return False
                question = self._auto_answer_queue.pop(0)
                session_id = ctx.session_id
                project_path = ctx.project_path
                timeout = ctx.timeout_configuration.execution
            if session_id is None or project_path is None:
                self._escalate_auto_answers(question, phase)
                return True
            try:
                answer = self._generate_smart_answer(question)
                ctx.add_log(LogType.INFO, f"Auto-answered '{question.header}': {answer}")
                result = self.agent.execute(
                    answer,
                    working_directory=project_path,
                    permission_mode=mode,
                    session_id=session_id,
                    timeout=timeout,
                    on_message=self._message_handler(phase, interview=False),
                )
            except AgentClientError as error:
                if ctx.is_handoff_in_progress or self._stop_requested:
                    raise
                ctx.add_log(LogType.ERROR, f"Auto-answer failed: {error}")
                self._escalate_auto_answers(question, phase)
                return True
            if result.is_error:
                ctx.add_log(LogType.ERROR, "Auto-answer was rejected by the agent")
                self._escalate_auto_answers(question, phase)
                return True

    def _escalate_auto_answers(self, question: PendingQuestion, phase: Phase) -> None:
        with self.context.lock:
            remaining = [question, *self._auto_answer_queue]
            self._auto_answer_queue = []
            for item in remaining:
                self._raise_question(item, phase)

    def _generate_smart_answer(self, question: PendingQuestion) -> str:
        ctx = self.context
        fallback = question.options[0].label if question.options else _FREEFORM_FALLBACK_ANSWER
        with ctx.lock:
            prompt = render_smart_answer_prompt(
                question,
                project_context=ctx.autonomous_config.project_context,
                task=ctx.current_task,
                plan=ctx.plan,
            )
            project_path = ctx.project_path
            timeout = ctx.timeout_configuration.plan_mode
        ctx.add_log(LogType.INFO, f"Generating smart answer for: {question.header or question.question}")
        result = self.agent.execute(
            prompt,
            working_directory=project_path,
            permission_mode=PermissionMode.READ_ONLY,
            session_id=None,
            timeout=timeout,
        )
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Smart answer generation failed, using first option")
            return fallback

        payload = extract_json_object(result.result_text)
        if payload is not None:
            try:
                parsed = _AnswerPayload.model_validate(payload)
            except ValidationError:
                parsed = None
            if parsed is not None:
                choice = match_option(parsed.choice, question.options) if question.options else parsed.choice
                if choice:
                    ctx.add_log(LogType.INFO, f"Smart answer selected: {choice}")
                    return choice
        ctx.add_log(LogType.INFO, f"Could not parse smart answer, using fallback: {fallback}")
        return fallback

    # -------------------------------------------------------- phase steps
    def _conduct_interview(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            session = ctx.interview_session
            if session is None:
                session = InterviewSession(feature_description=ctx.feature_description)
                ctx.interview_session = session
            asked = len(session.exchanges)
            if asked >= MAX_INTERVIEW_QUESTIONS:
                ctx.add_log(LogType.INFO, "Maximum interview questions reached, proceeding to plan generation")
                session.mark_complete()
                return
            ctx.add_log(LogType.INFO, f"Conducting interview (question {asked + 1}/{MAX_INTERVIEW_QUESTIONS} max)")
            prompt = render_interview_prompt(session)
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.plan_mode

        result = self._call_agent(
            phase,
            prompt,
            PermissionMode.READ_ONLY,
            timeout=timeout,
            session_id=session_id,
            interview=True,
        )
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Interview phase failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "conductInterview")

        with ctx.lock:
            if self._question_raised:
                return
            if not session.is_complete:
                ctx.add_log(LogType.INFO, "Agent responded without asking more questions, completing interview")
                session.mark_complete()
            ctx.add_log(LogType.INFO, "Interview completed, proceeding to plan generation")

    def _generate_initial_plan(self, phase: Phase) -> None:
        ctx = self.context
        ctx.add_log(LogType.INFO, "Generating initial plan")
        with ctx.lock:
            prompt = render_plan_prompt(ctx.feature_description, ctx.interview_session)
            timeout = ctx.timeout_configuration.plan_mode
        result = self._call_agent(phase, prompt, PermissionMode.READ_ONLY, timeout=timeout, session_id=None)
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Plan generation failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "generateInitialPlan")
        plan = self.plan_parser.parse_text(result.result_text)
        with ctx.lock:
            ctx.plan = plan
            ctx.add_log(LogType.INFO, f"Initial plan generated with {len(plan.tasks)} tasks")
        ctx.notify("plan")

    def _rewrite_plan(self, phase: Phase) -> None:
        ctx = self.context
        ctx.add_log(LogType.INFO, "Rewriting plan into the task format")
        with ctx.lock:
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.plan_mode
        result = self._call_agent(
            phase,
            render_rewrite_plan_prompt(),
            PermissionMode.READ_ONLY,
            timeout=timeout,
            session_id=session_id,
        )
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Plan rewrite failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "rewritePlan")
        plan = self.plan_parser.parse_text(result.result_text)
        with ctx.lock:
            ctx.plan = plan
            ctx.add_log(LogType.INFO, f"Plan rewritten with {len(plan.tasks)} tasks")
        ctx.notify("plan")

    def _execute_current_task(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = ctx.current_task
            if task is None:
                raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "executeCurrentTask")
            ctx.update_task_status(TaskStatus.IN_PROGRESS)
            continuation = ctx.continuation_summary
            if continuation is not None:
                ctx.add_log(LogType.INFO, "Resuming task with continuation context")
            ctx.add_log(LogType.INFO, f"Executing task {task.number}: {task.title}")
            plan = ctx.plan
            prompt = render_task_prompt(
                task,
                project_context=ctx.autonomous_config.project_context,
                completed=plan.completed_tasks() if plan is not None else [],
                continuation=continuation,
            )
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.execution

        result = self._call_agent(phase, prompt, PermissionMode.ACCEPT_EDITS, timeout=timeout, session_id=session_id)
        with ctx.lock:
            if continuation is not None and ctx.continuation_summary is continuation:
                ctx.continuation_summary = None
        if self._process_auto_answers(phase, PermissionMode.ACCEPT_EDITS) or ctx.is_handoff_in_progress:
            return
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Task execution failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "executeCurrentTask")
        ctx.add_log(LogType.INFO, f"Task {task.number} execution completed")

    def _review_code(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = self._require_task("reviewCode")
            ctx.add_log(LogType.INFO, f"Reviewing code for task {task.number}")
            prompt = render_review_prompt(task, project_context=ctx.autonomous_config.project_context)
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.execution
        result = self._call_agent(phase, prompt, PermissionMode.ACCEPT_EDITS, timeout=timeout, session_id=session_id)
        if self._process_auto_answers(phase, PermissionMode.ACCEPT_EDITS) or ctx.is_handoff_in_progress:
            return
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Code review failed")
        else:
            ctx.add_log(LogType.INFO, "Code review completed")

    def _write_tests(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = self._require_task("writeTests")
            ctx.add_log(LogType.INFO, f"Writing tests for task {task.number}")
            prompt = render_tests_prompt(task, project_context=ctx.autonomous_config.project_context)
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.execution
        result = self._call_agent(phase, prompt, PermissionMode.ACCEPT_EDITS, timeout=timeout, session_id=session_id)
        if self._process_auto_answers(phase, PermissionMode.ACCEPT_EDITS) or ctx.is_handoff_in_progress:
            return
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Test writing failed")
        else:
            ctx.add_log(LogType.INFO, "Tests written")

    def _commit_implementation(self, phase: Phase) -> None:
        task = self._require_task("commitImplementation")
        self._commit(f"feat: implement {task.title}")

    def _commit_review(self, phase: Phase) -> None:
        task = self._require_task("commitReview")
        self._commit(f"refactor: code review fixes for {task.title}")

    def _commit_tests(self, phase: Phase) -> None:
        task = self._require_task("commitTests")
        self._commit(f"test: add tests for {task.title}")

    def _commit(self, message: str) -> CommitResult:
        ctx = self.context
        project_path = ctx.project_path
        if project_path is None:
            raise ExecutionEngineError(EngineErrorKind.NO_PROJECT_PATH)
        ctx.add_log(LogType.INFO, f"Committing: {message}")
        result = self.committer.commit_all(message, project_path)
        if result.committed:
            summary = result.output.splitlines()[0] if result.output else (result.sha or "")
            ctx.add_log(LogType.INFO, f"Commit successful: {summary}")
        else:
            ctx.add_log(LogType.INFO, "No changes to commit")
        return result

    def _clear_context(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            ctx.session_id = None
            ctx.current_retry_attempt = 0
            self.budget.reset()
            ctx.add_log(LogType.INFO, "Context cleared for next task")
        self._save_plan()

    def _save_plan(self) -> None:
        ctx = self.context
        plan = ctx.plan
        if plan is None or ctx.project_path is None:
            return
        path = ctx.project_path / PLAN_FILE_NAME
        try:
            self.plan_parser.save(plan, path)
        except PlanFileError as error:
            LOGGER.warning("Could not save plan: %s", error)
            ctx.add_log(LogType.ERROR, f"Failed to save plan.md: {error}")
            return
        LOGGER.debug("Saved plan to %s", path)

    def _hand_off_context(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = ctx.current_task
            if task is None:
                ctx.is_handoff_in_progress = False
                raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "handleContextExhaustion")
            ctx.add_log(LogType.INFO, "Committing work in progress before context reset")
        try:
            self._commit(f"WIP: Task {task.number} - {task.title} (context handoff)")
        except GitError:
            ctx.is_handoff_in_progress = False
            raise

        summary = self._generate_continuation_summary(task)
        with ctx.lock:
            ctx.continuation_summary = summary
            ctx.session_id = None
            self.budget.reset()
            ctx.is_handoff_in_progress = False
            ctx.add_log(LogType.INFO, "Context reset, continuing task with a fresh session")

    def _generate_continuation_summary(self, task: PlanTask) -> ContinuationSummary:
        ctx = self.context
        ctx.add_log(LogType.INFO, "Generating continuation summary")

        def _log_summary(message: StreamMessage) -> None:
            if isinstance(message, AssistantMessage):
                for block in message.text_blocks:
                    ctx.add_log(LogType.OUTPUT, f"[Summary] {block.text}")

        raw_text = ""
        try:
            result = self.agent.execute(
                render_continuation_summary_prompt(task),
                working_directory=ctx.project_path,
                permission_mode=PermissionMode.READ_ONLY,
                session_id=None,
                timeout=ctx.timeout_configuration.plan_mode,
                on_message=_log_summary,
            )
        except AgentClientError as error:
            ctx.add_log(LogType.ERROR, f"Failed to generate continuation summary: {error}")
            return self._fallback_summary(task, raw_text)
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Failed to generate continuation summary")
            return self._fallback_summary(task, raw_text)

        raw_text = result.result_text
        payload = extract_json_object(raw_text)
        if payload is not None:
            try:
                parsed = _SummaryPayload.model_validate(payload)
            except ValidationError:
                parsed = None
            if parsed is not None:
                ctx.add_log(LogType.INFO, "Continuation summary generated")
                return ContinuationSummary(
                    task_number=task.number,
                    task_title=task.title,
                    progress_description=parsed.progress_description,
                    files_modified=parsed.files_modified,
                    pending_work=parsed.pending_work,
                )
        ctx.add_log(LogType.INFO, "Could not parse continuation summary, using raw response")
        return self._fallback_summary(task, raw_text)

    @staticmethod
    def _fallback_summary(task: PlanTask, raw_text: str) -> ContinuationSummary:
        progress = raw_text.strip()[:_SUMMARY_RAW_LIMIT] or _SUMMARY_FALLBACK_PROGRESS
        return ContinuationSummary(
            task_number=task.number,
            task_title=task.title,
            progress_description=progress,
            pending_work=f"Continue implementing {task.title} as described in the task requirements.",
        )

    def _run_build(self, phase: Phase) -> None:
        ctx = self.context
        project_path = ctx.project_path
        with ctx.lock:
            ctx.build_attempts += 1
            ctx.add_log(LogType.INFO, f"Running build (attempt {ctx.build_attempts})")
            config = ctx.project_configuration
        try:
            result = self.build_test_runner.run_build(project_path, config)
        except BuildTestError as error:
            ctx.add_log(LogType.INFO, f"Skipping build: {error}")
            return
        with ctx.lock:
            ctx.last_build_result = result
        if not result.success:
            ctx.add_log(LogType.ERROR, f"Build failed:\n{result.failure_output}")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "runBuild")
        ctx.add_log(LogType.INFO, "Build succeeded")

    def _fix_build_errors(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = self._require_task("fixBuildErrors")
            last = ctx.last_build_result
            ctx.add_log(LogType.INFO, f"Asking the agent to fix build errors (attempt {ctx.build_attempts})")
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.execution
        prompt = render_fix_build_prompt(last.failure_output if last is not None else "")
        result = self._call_agent(phase, prompt, PermissionMode.ACCEPT_EDITS, timeout=timeout, session_id=session_id)
        if self._process_auto_answers(phase, PermissionMode.ACCEPT_EDITS) or ctx.is_handoff_in_progress:
            return
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Build fix failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "fixBuildErrors")
        self._commit(f"fix: resolve build errors for {task.title}")

    def _run_tests(self, phase: Phase) -> None:
        ctx = self.context
        project_path = ctx.project_path
        with ctx.lock:
            ctx.test_attempts += 1
            ctx.add_log(LogType.INFO, f"Running tests (attempt {ctx.test_attempts})")
            config = ctx.project_configuration
        try:
            result = self.build_test_runner.run_tests(project_path, config)
        except BuildTestError as error:
            ctx.add_log(LogType.INFO, f"Skipping tests: {error}")
            return
        with ctx.lock:
            ctx.last_test_result = result
        if not result.success:
            ctx.add_log(LogType.ERROR, f"Tests failed:\n{result.failure_output}")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "runTests")
        ctx.add_log(LogType.INFO, "Tests passed")

    def _fix_test_errors(self, phase: Phase) -> None:
        ctx = self.context
        with ctx.lock:
            task = self._require_task("fixTestErrors")
            last = ctx.last_test_result
            ctx.add_log(LogType.INFO, f"Asking the agent to fix failing tests (attempt {ctx.test_attempts})")
            session_id = ctx.session_id
            timeout = ctx.timeout_configuration.execution
        prompt = render_fix_tests_prompt(last.failure_output if last is not None else "")
        result = self._call_agent(phase, prompt, PermissionMode.ACCEPT_EDITS, timeout=timeout, session_id=session_id)
        if self._process_auto_answers(phase, PermissionMode.ACCEPT_EDITS) or ctx.is_handoff_in_progress:
            return
        if result.is_error:
            ctx.add_log(LogType.ERROR, "Test fix failed")
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, "fixTestErrors")
        self._commit(f"fix: resolve test failures for {task.title}")

    def _require_task(self, operation: str) -> PlanTask:
        task = self.context.current_task
        if task is None:
            raise ExecutionEngineError(EngineErrorKind.EXECUTION_FAILED, operation)
        return task


__all__ = [
    "EngineErrorKind",
    "ExecutionEngine",
    "ExecutionEngineError",
    "PhaseStep",
    "extract_json_object",
    "match_option",
]
