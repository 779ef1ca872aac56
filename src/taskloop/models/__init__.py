"""Convenience exports for coding-agent client implementations."""

from .agent_client import (
    AgentClient,
    AgentClientError,
    AgentExecutableNotFoundError,
    AgentNoResultError,
    AgentProcessError,
    AgentResult,
    PermissionMode,
    ProcessErrorKind,
)
from .claude_cli import ClaudeCLIClient

__all__ = [
    "AgentClient",
    "AgentClientError",
    "AgentExecutableNotFoundError",
    "AgentNoResultError",
    "AgentProcessError",
    "AgentResult",
    "ClaudeCLIClient",
    "PermissionMode",
    "ProcessErrorKind",
]
