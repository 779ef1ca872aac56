from __future__ import annotations

import json
import stat
from pathlib import Path
from typing import List

import pytest

from taskloop.models.agent_client import (
    AgentExecutableNotFoundError,
    AgentNoResultError,
    AgentProcessError,
    PermissionMode,
    ProcessErrorKind,
)
from taskloop.models.claude_cli import ClaudeCLIClient
from taskloop.models.messages import AssistantMessage, ResultMessage, StreamMessage, SystemMessage


def _fake_cli(tmp_path: Path, lines: List[dict], *, exit_code: int = 0, stderr: str = "") -> Path:
    """Write an executable that prints ``lines`` as JSON and exits with ``exit_code``."""

    payload = "\n".join(json.dumps(line) for line in lines)
    script = tmp_path / "fake-claude"
    script.write_text(
        "#!/bin/sh\n"
        "cat <<'JSON'\n"
        f"{payload}\n"
        "not json output from a plugin\n"
        "JSON\n"
        + (f"echo '{stderr}' >&2\n" if stderr else "")
        + f"exit {exit_code}\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


_SESSION_LINES = [
    {"type": "system", "subtype": "init", "session_id": "s-42"},
    {
        "type": "assistant",
        "session_id": "s-42",
        "message": {"content": [{"type": "text", "text": "All done"}], "usage": {"input_tokens": 12}},
    },
    {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "duration_ms": 1500,
        "result": "All done",
        "session_id": "s-42",
        "total_cost_usd": 0.25,
    },
]


def test_build_arguments_resumes_session() -> None:
    client = ClaudeCLIClient("claude", extra_args=["--model", "sonnet"])

    args = client.build_arguments("Do it", PermissionMode.ACCEPT_EDITS, "s-1")

    assert args == [
        "claude",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--permission-mode",
        "acceptEdits",
        "--model",
        "sonnet",
        "--resume",
        "s-1",
        "Do it",
    ]


def test_build_arguments_without_session() -> None:
    args = ClaudeCLIClient().build_arguments("Plan it", PermissionMode.READ_ONLY)

    assert "--resume" not in args
    assert args[args.index("--permission-mode") + 1] == "plan"
    assert args[-1] == "Plan it"


def test_execute_streams_messages_and_returns_result(tmp_path: Path) -> None:
    script = _fake_cli(tmp_path, _SESSION_LINES)
    seen: List[StreamMessage] = []

    result = ClaudeCLIClient(str(script)).execute(
        "hello",
        working_directory=tmp_path,
        permission_mode=PermissionMode.READ_ONLY,
        timeout=30,
        on_message=seen.append,
    )

    assert [type(message) for message in seen] == [SystemMessage, AssistantMessage, ResultMessage]
    assert result.result_text == "All done"
    assert result.session_id == "s-42"
    assert result.total_cost == 0.25
    assert result.duration_ms == 1500
    assert not result.is_error


def test_soft_exit_is_retryable(tmp_path: Path) -> None:
    script = _fake_cli(tmp_path, _SESSION_LINES[:1], exit_code=1, stderr="overloaded")

    with pytest.raises(AgentProcessError) as excinfo:
        ClaudeCLIClient(str(script)).execute(
            "hello",
            working_directory=tmp_path,
            permission_mode=PermissionMode.READ_ONLY,
        )

    error = excinfo.value
    assert error.kind is ProcessErrorKind.NON_ZERO_EXIT
    assert error.exit_code == 1
    assert error.is_retryable
    assert "overloaded" in str(error)


def test_missing_result_message(tmp_path: Path) -> None:
    script = _fake_cli(tmp_path, _SESSION_LINES[:2])

    with pytest.raises(AgentNoResultError):
        ClaudeCLIClient(str(script)).execute(
            "hello",
            working_directory=tmp_path,
            permission_mode=PermissionMode.READ_ONLY,
        )


def test_missing_executable(tmp_path: Path) -> None:
    client = ClaudeCLIClient(str(tmp_path / "no-such-claude"))

    with pytest.raises(AgentExecutableNotFoundError, match="Agent executable not found"):
        client.execute("hello", working_directory=tmp_path, permission_mode=PermissionMode.READ_ONLY)
    assert not client.is_running


def test_interrupt_without_process_is_noop() -> None:
    client = ClaudeCLIClient()

    client.interrupt()
    client.terminate()

    assert not client.is_running
