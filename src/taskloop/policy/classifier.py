"""Keyword heuristic deciding whether a task is UI work (no generated tests)."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Tuple

from ..settings import DEFAULT_UI_KEYWORDS
from ..state.schema import PlanTask


@dataclass(slots=True)
class KeywordTaskClassifier:
    keywords: Tuple[str, ...] = field(default_factory=lambda: tuple(DEFAULT_UI_KEYWORDS))

    @classmethod
    def from_keywords(cls, keywords: Iterable[str]) -> "KeywordTaskClassifier":
        cleaned = tuple(word.strip().lower() for word in keywords if word and word.strip())
        return cls(keywords=cleaned)

    def is_ui_task(self, task: PlanTask) -> bool:
        title = task.title.lower()
        description = task.description.lower()
        return any(keyword in title or keyword in description for keyword in self.keywords)


__all__ = ["KeywordTaskClassifier"]
