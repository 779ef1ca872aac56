"""Markdown plan parsing and serialisation.

Plans use one block per task::

    ## Task 1: Title
    **Description:** What the task accomplishes
    - [ ] Acceptance criterion
    - [x] Another criterion

Lines outside these shapes are ignored. Saved plans also carry a
``**Status:** completed`` line (or skipped, failed) for settled tasks so a
restart resumes where the run stopped. Without that line a task whose
checklist is entirely ticked reads back as completed.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from ..state.schema import Plan, PlanTask, TaskStatus

PLAN_FILE_NAME = "plan.md"

_TASK_PATTERN = re.compile(r"## Task (\d+): (.+)")
_DESCRIPTION_PATTERN = re.compile(r"\*\*Description:\*\*\s*(.+)")
_STATUS_PATTERN = re.compile(r"\*\*Status:\*\*\s*(\w+)")
_SAVED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED)
_SUBTASK_PATTERN = re.compile(r"- \[([ xX]?)\] (.+)")


class PlanFileError(RuntimeError):
    """Raised when a plan file cannot be read or written."""


class PlanParser:
    """Convert between plan markdown and :class:`Plan` records."""

    def parse_text(self, text: str) -> Plan:
        tasks: List[PlanTask] = []
        number: Optional[int] = None
        title: Optional[str] = None
        description = ""
        subtasks: List[str] = []
        ticked: List[bool] = []
        status: Optional[TaskStatus] = None

        def _flush() -> None:
            if number is None or title is None:
                return
            done = bool(subtasks) and all(ticked)
            settled = status or (TaskStatus.COMPLETED if done else TaskStatus.PENDING)
            tasks.append(
                PlanTask(
                    number=number,
                    title=title.strip(),
                    description=description.strip(),
                    status=settled,
                    subtasks=list(subtasks),
                )
            )

        for raw_line in text.splitlines():
            line = raw_line.rstrip("\r")
            task_match = _TASK_PATTERN.fullmatch(line)
            if task_match:
                _flush()
                number = int(task_match.group(1))
                title = task_match.group(2)
                description = ""
                subtasks = []
                ticked = []
                status = None
                continue
            description_match = _DESCRIPTION_PATTERN.fullmatch(line)
            if description_match:
                description = description_match.group(1)
                continue
            status_match = _STATUS_PATTERN.fullmatch(line)
            if status_match:
                try:
                    status = TaskStatus(status_match.group(1))
                except ValueError:
                    status = None
                continue
            subtask_match = _SUBTASK_PATTERN.fullmatch(line)
            if subtask_match:
                subtasks.append(subtask_match.group(2))
                ticked.append(subtask_match.group(1).lower() == "x")

        _flush()
        tasks.sort(key=lambda task: task.number)
        return Plan(raw_text=text, tasks=tasks)

    def parse_file(self, path: Path) -> Plan:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as error:
            raise PlanFileError(f"Failed to read plan {path}: {error}") from error
        return self.parse_text(text)

    def serialize(self, plan: Plan) -> str:
        blocks: List[str] = []
        for task in plan.tasks:
            lines = [f"## Task {task.number}: {task.title}"]
            if task.description:
                lines.append(f"**Description:** {task.description}")
            if task.status in _SAVED_STATUSES:
                lines.append(f"**Status:** {task.status.value}")
            mark = "x" if task.status == TaskStatus.COMPLETED else " "
            lines.extend(f"- [{mark}] {subtask}" for subtask in task.subtasks)
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks) + ("\n" if blocks else "")

    def save(self, plan: Plan, path: Path) -> None:
        try:
            path.write_text(self.serialize(plan), encoding="utf-8")
        except OSError as error:
            raise PlanFileError(f"Failed to write plan {path}: {error}") from error


__all__ = ["PLAN_FILE_NAME", "PlanFileError", "PlanParser"]
