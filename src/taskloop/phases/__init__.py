"""Phases of the execution loop and the groupings the engine consults."""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """Enumeration of the execution loop phases."""

    IDLE = "idle"
    CONDUCTING_INTERVIEW = "conductingInterview"
    GENERATING_INITIAL_PLAN = "generatingInitialPlan"
    REWRITING_PLAN = "rewritingPlan"
    EXECUTING_TASK = "executingTask"
    COMMITTING_IMPLEMENTATION = "committingImplementation"
    REVIEWING_CODE = "reviewingCode"
    COMMITTING_REVIEW = "committingReview"
    WRITING_TESTS = "writingTests"
    COMMITTING_TESTS = "committingTests"
    CLEARING_CONTEXT = "clearingContext"
    HANDLING_CONTEXT_EXHAUSTION = "handlingContextExhaustion"
    RUNNING_BUILD = "runningBuild"
    FIXING_BUILD_ERRORS = "fixingBuildErrors"
    RUNNING_TESTS = "runningTests"
    FIXING_TEST_ERRORS = "fixingTestErrors"
    WAITING_FOR_USER = "waitingForUser"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_running(self) -> bool:
        """Return ``True`` while the loop owns the phase (waiting included)."""
        return self not in {Phase.IDLE, Phase.PAUSED, Phase.COMPLETED, Phase.FAILED}

    @property
    def is_active(self) -> bool:
        return self.is_running and self is not Phase.WAITING_FOR_USER

    @property
    def allows_context_handoff(self) -> bool:
        return self in HANDOFF_PHASES

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self, self.value)


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})

HANDOFF_PHASES = frozenset(
    {
        Phase.EXECUTING_TASK,
        Phase.REVIEWING_CODE,
        Phase.WRITING_TESTS,
        Phase.FIXING_BUILD_ERRORS,
        Phase.FIXING_TEST_ERRORS,
    }
)

# Phases whose agent calls never modify the working tree.
READ_ONLY_PHASES = frozenset(
    {
        Phase.CONDUCTING_INTERVIEW,
        Phase.GENERATING_INITIAL_PLAN,
        Phase.REWRITING_PLAN,
    }
)

_DISPLAY_NAMES = {
    Phase.IDLE: "Idle",
    Phase.CONDUCTING_INTERVIEW: "Conducting Interview",
    Phase.GENERATING_INITIAL_PLAN: "Generating Plan",
    Phase.REWRITING_PLAN: "Rewriting Plan",
    Phase.EXECUTING_TASK: "Executing Task",
    Phase.COMMITTING_IMPLEMENTATION: "Committing Implementation",
    Phase.REVIEWING_CODE: "Reviewing Code",
    Phase.COMMITTING_REVIEW: "Committing Review",
    Phase.WRITING_TESTS: "Writing Tests",
    Phase.COMMITTING_TESTS: "Committing Tests",
    Phase.CLEARING_CONTEXT: "Clearing Context",
    Phase.HANDLING_CONTEXT_EXHAUSTION: "Handing Off Context",
    Phase.RUNNING_BUILD: "Running Build",
    Phase.FIXING_BUILD_ERRORS: "Fixing Build Errors",
    Phase.RUNNING_TESTS: "Running Tests",
    Phase.FIXING_TEST_ERRORS: "Fixing Test Errors",
    Phase.WAITING_FOR_USER: "Waiting for User",
    Phase.PAUSED: "Paused",
    Phase.COMPLETED: "Completed",
    Phase.FAILED: "Failed",
}


__all__ = ["HANDOFF_PHASES", "Phase", "READ_ONLY_PHASES", "TERMINAL_PHASES"]
