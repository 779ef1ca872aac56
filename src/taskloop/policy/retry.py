"""Backoff and retryability calculations for agent calls."""

from __future__ import annotations

from dataclasses import dataclass

from ..models.agent_client import AgentClientError
from ..settings import RetryConfiguration


@dataclass(slots=True)
class RetryPolicy:
    """Pure calculator over a :class:`RetryConfiguration`."""

    configuration: RetryConfiguration

    @property
    def max_attempts(self) -> int:
        return self.configuration.max_attempts

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based) before the next one."""

        config = self.configuration
        exponent = max(attempt - 1, 0)
        return min(config.initial_delay * config.backoff_multiplier**exponent, config.max_delay)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        if isinstance(error, AgentClientError):
            return error.is_retryable
        return False

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return self.is_retryable(error) and attempt < self.configuration.max_attempts


__all__ = ["RetryPolicy"]
