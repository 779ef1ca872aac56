"""Prompt templates sent to the coding agent for each phase."""

from __future__ import annotations

from typing import Optional, Sequence

from .state.schema import ContinuationSummary, InterviewSession, Plan, PlanTask, PendingQuestion

INTERVIEW_COMPLETE_SENTINEL = "INTERVIEW_COMPLETE"
MAX_INTERVIEW_QUESTIONS = 5

PLAN_FORMAT_EXAMPLE = (
    "## Task 1: Task Title\n"
    "**Description:** Brief description of what this task accomplishes\n"
    "- [ ] Subtask or acceptance criterion\n"
    "- [ ] Another subtask\n"
)


def render_project_context(project_context: str) -> str:
    """Return the optional project context block (empty when unset)."""
    if not project_context.strip():
        return ""
    return f"## Project Context\n{project_context.strip()}\n\n"


def render_completed_tasks(tasks: Sequence[PlanTask]) -> str:
    if not tasks:
        return ""
    listing = "\n".join(f"- Task {task.number}: {task.title}" for task in tasks)
    return f"## Previously Completed Tasks\n{listing}\n\n"


def render_interview_prompt(session: InterviewSession) -> str:
    asked = len(session.exchanges)
    previous = ""
    if session.exchanges:
        previous = f"\n## Previous Clarifications\n{session.prompt_context()}\n"
    return (
        "You are gathering requirements for a software feature. Read the request below "
        "and decide whether one clarifying question would materially improve the plan.\n\n"
        f"## Feature Request\n{session.feature_description}\n"
        f"{previous}\n"
        "## Instructions\n"
        f"1. If the request is clear enough to plan, reply with exactly: {INTERVIEW_COMPLETE_SENTINEL}\n"
        "2. Otherwise ask ONE question using the AskUserQuestion tool.\n"
        "3. Ask about ambiguous requirements, technical decisions or scope, never about details you can decide.\n"
        f"4. At most {MAX_INTERVIEW_QUESTIONS} questions in total; {asked} asked so far."
    )


def render_plan_prompt(feature_description: str, session: Optional[InterviewSession]) -> str:
    clarifications = ""
    if session is not None and session.exchanges:
        clarifications = f"\n\n## Clarifications from User\n{session.prompt_context()}\n"
    return (
        "Analyze the following feature request and create a high-level implementation plan:\n\n"
        f"{feature_description}{clarifications}\n"
        "Break the work into small, focused tasks that can be completed independently. "
        "Use this format:\n\n"
        f"{PLAN_FORMAT_EXAMPLE}\n"
        "## Task 2: Next Task Title\n...and so on."
    )


def render_rewrite_plan_prompt() -> str:
    return (
        "Review the plan and make every task follow this exact format:\n\n"
        f"{PLAN_FORMAT_EXAMPLE}\n"
        "Tasks are numbered sequentially from 1, every task has an actionable title and a "
        "description, and subtasks are concrete acceptance criteria.\n\n"
        "Output only the reformatted plan, nothing else."
    )


def render_task_prompt(
    task: PlanTask,
    *,
    project_context: str = "",
    completed: Sequence[PlanTask] = (),
    continuation: Optional[ContinuationSummary] = None,
) -> str:
    criteria = (
        "\n".join(f"- {subtask}" for subtask in task.subtasks)
        if task.subtasks
        else "No specific subtasks defined."
    )
    seed = continuation.prompt_context() if continuation is not None else ""
    return (
        f"{seed}{render_project_context(project_context)}{render_completed_tasks(completed)}"
        "Execute the following task:\n\n"
        f"## Task {task.number}: {task.title}\n{task.description}\n\n"
        f"## Acceptance Criteria\n{criteria}\n\n"
        "## Instructions\n"
        "- Implement this task completely, creating or modifying files as needed\n"
        "- Follow the existing code patterns and conventions of the project\n"
        "- Reference plan.md in the project root for the overall plan\n"
        "- Build on previously completed tasks where relevant"
    )


def render_review_prompt(task: PlanTask, *, project_context: str = "") -> str:
    return (
        f"{render_project_context(project_context)}"
        f"## Task Being Reviewed\n**Task {task.number}: {task.title}**\n{task.description}\n\n"
        "Review the code changes just made for this task for duplication, naming, readability, "
        "edge cases, error handling and consistency with the project's patterns. "
        "Fix any issue you find; otherwise confirm the code meets the project's standards."
    )


def render_tests_prompt(task: PlanTask, *, project_context: str = "") -> str:
    return (
        f"{render_project_context(project_context)}"
        f"## Task Being Tested\n**Task {task.number}: {task.title}**\n{task.description}\n\n"
        "Write unit tests for the code implemented in this task. Cover the main behaviour, "
        "boundary conditions and error paths, follow the project's existing test framework and "
        "layout, and skip UI components and trivial accessors."
    )


def render_fix_build_prompt(error_output: str) -> str:
    return (
        f"The build failed with the following errors:\n\n```\n{error_output}\n```\n\n"
        "Fix these build errors with the smallest change that resolves them."
    )


def render_fix_tests_prompt(error_output: str) -> str:
    return (
        f"The tests failed with the following output:\n\n```\n{error_output}\n```\n\n"
        "Fix the failures: correct the code if it has a bug, or the test if it is wrong."
    )


def render_continuation_summary_prompt(task: PlanTask) -> str:
    return (
        "Generate a concise continuation summary for the current task.\n\n"
        f"Task: {task.number} - {task.title}\nDescription: {task.description}\n\n"
        "Provide what has been accomplished (2-3 sentences), the files modified (paths only), "
        "and what remains to finish the task (2-3 sentences).\n\n"
        "Output ONLY this JSON object, nothing else:\n"
        '{"progressDescription": "...", "filesModified": ["path"], "pendingWork": "..."}'
    )


def render_smart_answer_prompt(
    question: PendingQuestion,
    *,
    project_context: str = "",
    task: Optional[PlanTask] = None,
    plan: Optional[Plan] = None,
) -> str:
    options = "\n".join(
        f"{index}. {option.label} - {option.description}"
        for index, option in enumerate(question.options, start=1)
    )
    task_line = (
        f"Current Task: {task.number} - {task.title}\nDescription: {task.description}"
        if task is not None
        else "No current task"
    )
    plan_lines = "No plan available"
    if plan is not None:
        listing = "\n".join(
            f"{entry.number}. {entry.title} [{entry.status.value}]" for entry in plan.tasks[:10]
        )
        plan_lines = f"Plan Tasks:\n{listing}"
    return (
        "You are automating a development workflow. The coding agent asked a question during "
        "task execution and you must choose the best answer.\n\n"
        f"## Project Context\n{project_context.strip() or 'No specific context provided'}\n\n"
        f"## Current State\n{task_line}\n\n{plan_lines}\n\n"
        f"## Question\n**{question.header}**: {question.question}\n\nOptions:\n{options}\n\n"
        "Choose the option that best fits the project goals, common practice and the current task. "
        'Respond with ONLY a JSON object: {"choice": "exact option label", "reasoning": "brief explanation"}'
    )


__all__ = [
    "INTERVIEW_COMPLETE_SENTINEL",
    "MAX_INTERVIEW_QUESTIONS",
    "render_completed_tasks",
    "render_continuation_summary_prompt",
    "render_fix_build_prompt",
    "render_fix_tests_prompt",
    "render_interview_prompt",
    "render_plan_prompt",
    "render_project_context",
    "render_review_prompt",
    "render_rewrite_plan_prompt",
    "render_smart_answer_prompt",
    "render_task_prompt",
    "render_tests_prompt",
]
