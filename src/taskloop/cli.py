"""Terminal front end: run one workspace, answer its questions, watch its log."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional

import typer
import yaml

from .engine import ExecutionEngine, ExecutionEngineError
from .phases import Phase
from .settings import DEFAULT_PREFERENCES_NAME, Preferences, PreferencesError, ProjectType
from .state.context import ExecutionContext
from .state.schema import LogType, PendingQuestion, PendingTaskFailure, TaskFailureResponse
from .tools.build_test import BuildTestRunner, detect_project_type
from .tools.plans import PLAN_FILE_NAME, PlanFileError, PlanParser
from .tools.vcs import GitError, GitRepository
from .tools.worktrees import WorktreeError, WorktreeIsolation
from .workspaces import Workspace, WorkspaceCoordinator

LOGGER = logging.getLogger(__name__)

APP_HELP = "Drive a coding agent through interview, planning and task-by-task implementation."

app = typer.Typer(help=APP_HELP)

_LOG_PREFIXES = {
    LogType.OUTPUT: "",
    LogType.TOOL_USE: "  > ",
    LogType.RESULT: "  = ",
    LogType.ERROR: "! ",
    LogType.INFO: "* ",
    LogType.SEPARATOR: "",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_preferences(config_path: Path) -> Preferences:
    """Load preferences from ``config_path``; a missing file yields defaults."""
    try:
        return Preferences.load(config_path)
    except PreferencesError as error:
        typer.echo(f"Failed to load config: {error}")
        raise typer.Exit(code=1) from error


def _write_config(config_path: Path, preferences: Preferences) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(preferences.to_dict(), handle, sort_keys=False)


def _echo_log_listener(event: str, context: ExecutionContext) -> None:
    if event != "log" or not context.logs:
        return
    entry = context.logs[-1]
    typer.echo(f"{_LOG_PREFIXES.get(entry.type, '')}{entry.message}")


def _resolve_project(project: Path) -> Path:
    path = project.expanduser().resolve()
    if not path.is_dir():
        raise typer.BadParameter(f"Project directory not found: {path}", param_hint="--project")
    return path


def _open_workspace(preferences: Preferences, project: Path) -> tuple[WorkspaceCoordinator, Workspace]:
    coordinator = WorkspaceCoordinator(preferences=preferences)
    try:
        workspace = coordinator.create_workspace(project)
    except WorktreeError as error:
        typer.echo(f"Failed to prepare workspace: {error}")
        raise typer.Exit(code=1) from error
    workspace.context.subscribe(_echo_log_listener)
    return coordinator, workspace


def _format_option_list(question: PendingQuestion) -> List[str]:
    return [
        f"  {index}. {option.label}" + (f" - {option.description}" if option.description else "")
        for index, option in enumerate(question.options, start=1)
    ]


def resolve_answer(question: PendingQuestion, reply: str) -> str:
    """Map numeric replies onto option labels; anything else is sent verbatim."""
    text = reply.strip()
    if question.is_freeform:
        return text
    picks = [part.strip() for part in text.split(",")] if question.multi_select else [text]
    labels: List[str] = []
    for pick in picks:
        if pick.isdigit() and 1 <= int(pick) <= len(question.options):
            labels.append(question.options[int(pick) - 1].label)
        else:
            return text
    return ", ".join(labels)


def _ask_question(question: PendingQuestion) -> str:
    title = f"{question.header}: " if question.header else ""
    typer.echo(f"\n? {title}{question.question}")
    for line in _format_option_list(question):
        typer.echo(line)
    hint = "Choose numbers separated by commas" if question.multi_select else "Answer"
    return resolve_answer(question, typer.prompt(hint))


def _ask_failure(failure: PendingTaskFailure) -> TaskFailureResponse:
    typer.echo(f"\nTask {failure.task_number} ({failure.task_title}) failed: {failure.error}")
    while True:
        reply = typer.prompt("retry, skip or stop", default=TaskFailureResponse.RETRY.value)
        try:
            return TaskFailureResponse(reply.strip().lower())
        except ValueError:
            typer.echo(f"Unknown choice: {reply}")


def _drive(engine: ExecutionEngine, begin: Callable[[], None]) -> None:
    """Run ``begin`` and then serve questions and failures until the run settles."""
    context = engine.context
    try:
        begin()
        while True:
            waiting = context.phase is Phase.WAITING_FOR_USER
            if waiting and context.pending_task_failure is not None:
                engine.handle_task_failure_response(_ask_failure(context.pending_task_failure))
            elif waiting and context.pending_question is not None:
                engine.answer_question(_ask_question(context.pending_question))
            elif context.appears_stuck and context.is_manual_input_available:
                engine.send_manual_input(typer.prompt("The interview stalled; message for the agent"))
            else:
                break
    except KeyboardInterrupt:
        engine.stop()
        typer.echo("\nStopped.")
        raise typer.Exit(code=130)
    except ExecutionEngineError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _report(context: ExecutionContext) -> None:
    typer.echo("")
    plan = context.plan
    if plan is not None:
        for task in plan.tasks:
            typer.echo(f"- [{task.status.value}] Task {task.number}: {task.title}")
    typer.echo(f"Cost: ${context.total_cost:.4f}")
    typer.echo(f"Outcome: {context.phase.display_name}")
    if context.phase is Phase.FAILED:
        for error in list(context.errors)[-3:]:
            detail = f" ({error.underlying_error})" if error.underlying_error else ""
            typer.echo(f"  ! {error.message}{detail}")
        raise typer.Exit(code=1)


@app.command("init-config")
def init_config(
    config: str = typer.Option(
        DEFAULT_PREFERENCES_NAME,
        "--config",
        "-c",
        help="Path of the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a configuration file populated with the defaults."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite it.")
        raise typer.Exit(code=1)
    _write_config(config_path, Preferences())
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command()
def run(
    feature: str = typer.Argument(..., help="Feature to build, in plain language."),
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory (a git repository)."),
    config: str = typer.Option(
        DEFAULT_PREFERENCES_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    autonomous: Optional[bool] = typer.Option(
        None,
        "--autonomous/--interactive",
        help="Override autonomous.enabled from the configuration.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Interview, plan and implement ``feature`` in the project."""
    _configure_logging(verbose)
    config_path = Path(config)
    preferences = load_preferences(config_path)
    if autonomous is not None:
        preferences.autonomous.enabled = autonomous
    project_path = _resolve_project(project)
    _apply_detected_project_type(preferences, project_path)

    _, workspace = _open_workspace(preferences, project_path)
    workspace.context.feature_description = feature
    _drive(workspace.engine, workspace.engine.start)
    _save_recent(project_path, config_path)
    _report(workspace.context)


@app.command("resume-plan")
def resume_plan(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory (a git repository)."),
    plan: Optional[Path] = typer.Option(
        None,
        "--plan",
        help=f"Plan file to execute (defaults to {PLAN_FILE_NAME} in the project).",
    ),
    config: str = typer.Option(
        DEFAULT_PREFERENCES_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Continue an existing plan from its first unfinished task."""
    _configure_logging(verbose)
    config_path = Path(config)
    preferences = load_preferences(config_path)
    project_path = _resolve_project(project)
    plan_path = plan if plan is not None else project_path / PLAN_FILE_NAME
    try:
        existing = PlanParser().parse_file(plan_path)
    except PlanFileError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    if not existing.tasks:
        typer.echo(f"No tasks found in {plan_path}.")
        raise typer.Exit(code=1)

    _apply_detected_project_type(preferences, project_path)
    _, workspace = _open_workspace(preferences, project_path)
    workspace.context.existing_plan = existing
    _drive(workspace.engine, workspace.engine.start_with_existing_plan)
    _save_recent(project_path, config_path)
    _report(workspace.context)


@app.command()
def worktrees(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory (a git repository)."),
) -> None:
    """List the isolated copies created for a project."""
    project_path = _resolve_project(project)
    try:
        copies = WorktreeIsolation().list_isolated_copies(project_path)
    except WorktreeError as error:
        typer.echo(f"Failed to list worktrees: {error}")
        raise typer.Exit(code=1) from error
    if not copies:
        typer.echo("No isolated copies.")
        return
    for info in copies:
        typer.echo(f"{info.id}  {info.branch_name}  {info.isolated_path}  ({_describe_changes(info.isolated_path)})")


def _describe_changes(path: Path) -> str:
    try:
        changed = GitRepository(path).working_tree_changes()
    except GitError as error:
        LOGGER.warning("Failed to inspect %s: %s", path, error)
        return "status unknown"
    return f"{len(changed)} uncommitted change(s)" if changed else "clean"


@app.command()
def detect(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory."),
    config: str = typer.Option(
        DEFAULT_PREFERENCES_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Show the detected project type and the build/test commands that would run."""
    project_path = _resolve_project(project)
    preferences = load_preferences(Path(config))
    configuration = preferences.project.model_copy()
    detected = detect_project_type(project_path)
    if configuration.project_type is ProjectType.UNKNOWN:
        configuration.project_type = detected
    runner = BuildTestRunner()
    typer.echo(f"Project type: {detected.value}")
    typer.echo(f"Build command: {runner.build_command(configuration) or '(none)'}")
    typer.echo(f"Test command: {runner.test_command(configuration) or '(none)'}")


def _save_recent(project_path: Path, config_path: Path) -> None:
    """Record the project in the configuration file without persisting CLI overrides."""
    if not config_path.exists():
        return
    try:
        stored = Preferences.load(config_path)
        stored.add_recent_project(project_path)
        stored.save(config_path)
    except (OSError, PreferencesError) as error:
        typer.echo(f"Warning: failed to update {config_path}: {error}")


def _apply_detected_project_type(preferences: Preferences, project_path: Path) -> None:
    if preferences.project.project_type is ProjectType.UNKNOWN:
        preferences.project.project_type = detect_project_type(project_path)


if __name__ == "__main__":
    app()
