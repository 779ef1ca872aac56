"""Token budget tracking for the commit, summarize, reset, reseed handoff."""

from __future__ import annotations

import threading

from ..phases import Phase

DEFAULT_WINDOW_SIZE = 200_000
DEFAULT_LOW_THRESHOLD = 0.10


class ContextBudgetMonitor:
    """Track how full the current agent conversation is.

    Every assistant turn reports the size of the prompt it was given, which is
    the whole conversation so far; the latest figure is what counts against the
    window. The conversation is never compacted. When the remaining fraction
    drops below ``low_threshold`` during a phase that allows it, the engine
    commits work in progress, asks for a continuation summary, drops the
    session and reseeds the task with that summary. :meth:`reset` is called
    once the fresh session starts.
    """

    def __init__(
        self,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        low_threshold: float = DEFAULT_LOW_THRESHOLD,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.window_size = window_size
        self.low_threshold = low_threshold
        self._prompt_tokens = 0
        self._lock = threading.Lock()

    @property
    def prompt_tokens(self) -> int:
        return self._prompt_tokens

    def record_usage(self, prompt_tokens: int) -> None:
        with self._lock:
            self._prompt_tokens = max(prompt_tokens, 0)

    def reset(self) -> None:
        with self._lock:
            self._prompt_tokens = 0

    @property
    def remaining_fraction(self) -> float:
        if self._prompt_tokens <= 0:
            return 1.0
        return max(0.0, 1.0 - self._prompt_tokens / self.window_size)

    @property
    def used_fraction(self) -> float:
        return 1.0 - self.remaining_fraction

    @property
    def is_low(self) -> bool:
        return self.remaining_fraction < self.low_threshold

    def should_hand_off(self, phase: Phase, *, in_progress: bool = False) -> bool:
        """Return ``True`` when a handoff must start for ``phase``."""

        return self.is_low and not in_progress and phase.allows_context_handoff


__all__ = ["ContextBudgetMonitor", "DEFAULT_LOW_THRESHOLD", "DEFAULT_WINDOW_SIZE"]
