from __future__ import annotations

from pathlib import Path

import pytest

from taskloop.state.schema import Plan, PlanTask, TaskStatus
from taskloop.tools.plans import PlanFileError, PlanParser


def test_parse_text_reads_tasks_descriptions_and_subtasks() -> None:
    text = (
        "Some preamble the agent added.\n\n"
        "## Task 1: Load config\n"
        "**Description:** Read settings from YAML\n"
        "- [ ] Reject unknown keys\n"
        "- [x] Default missing values\n"
        "Free text that is ignored\n\n"
        "## Task 2: Wire loader\n"
        "- [X] Call it on startup\n"
    )

    plan = PlanParser().parse_text(text)

    assert plan.raw_text == text
    first, second = plan.tasks
    assert (first.number, first.title, first.description) == (1, "Load config", "Read settings from YAML")
    assert first.subtasks == ["Reject unknown keys", "Default missing values"]
    assert first.status is TaskStatus.PENDING
    assert second.description == ""
    assert second.status is TaskStatus.COMPLETED


def test_parse_text_sorts_by_task_number() -> None:
    text = "## Task 3: Third\n\n## Task 1: First\n\n## Task 2: Second\n"

    plan = PlanParser().parse_text(text)

    assert [task.number for task in plan.tasks] == [1, 2, 3]


def test_task_without_subtasks_is_pending() -> None:
    plan = PlanParser().parse_text("## Task 1: Lonely\n**Description:** Nothing to tick\n")

    assert plan.tasks[0].status is TaskStatus.PENDING


def test_text_without_headers_yields_no_tasks() -> None:
    assert PlanParser().parse_text("I could not produce a plan.").tasks == []


def test_serialize_marks_completed_tasks_and_round_trips_status(tmp_path: Path) -> None:
    plan = Plan(
        tasks=[
            PlanTask(number=1, title="Done", description="Finished work", subtasks=["a", "b"], status=TaskStatus.COMPLETED),
            PlanTask(number=2, title="Open", subtasks=["c"], status=TaskStatus.IN_PROGRESS),
        ]
    )
    parser = PlanParser()
    path = tmp_path / "plan.md"

    parser.save(plan, path)
    text = path.read_text(encoding="utf-8")

    assert text.startswith(
        "## Task 1: Done\n**Description:** Finished work\n**Status:** completed\n- [x] a\n- [x] b\n\n"
        "## Task 2: Open\n- [ ] c\n"
    )
    reloaded = parser.parse_file(path)
    assert reloaded.first_unfinished_index() == 1


def test_settled_status_survives_save_without_checklist(tmp_path: Path) -> None:
    plan = Plan(
        tasks=[
            PlanTask(number=1, title="No checklist", status=TaskStatus.COMPLETED),
            PlanTask(number=2, title="Dropped", subtasks=["d"], status=TaskStatus.SKIPPED),
            PlanTask(number=3, title="Next", subtasks=["e"]),
        ]
    )
    parser = PlanParser()
    path = tmp_path / "plan.md"

    parser.save(plan, path)
    reloaded = parser.parse_file(path)

    assert [task.status for task in reloaded.tasks] == [
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
        TaskStatus.PENDING,
    ]


def test_unknown_status_line_falls_back_to_checklist() -> None:
    plan = PlanParser().parse_text("## Task 1: Odd\n**Status:** someday\n- [x] done\n")

    assert plan.tasks[0].status is TaskStatus.COMPLETED


def test_parse_file_missing_raises(tmp_path: Path) -> None:
    with pytest.raises(PlanFileError, match="Failed to read plan"):
        PlanParser().parse_file(tmp_path / "absent.md")
