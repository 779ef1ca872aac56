"""Agent client that drives the ``claude`` CLI in ``stream-json`` mode."""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from .agent_client import (
    AgentClient,
    AgentExecutableNotFoundError,
    AgentNoResultError,
    AgentProcessError,
    AgentResult,
    MessageHandler,
    PermissionMode,
    ProcessErrorKind,
)
from .messages import ResultMessage, parse_stream_line

LOGGER = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "claude"
_KILL_GRACE_SECONDS = 5.0


class ClaudeCLIClient(AgentClient):
    """Run one ``claude -p`` process per call and stream its JSON lines.

    Stdout is read line by line on the calling thread; stderr is drained on a
    helper thread so a chatty process cannot block on a full pipe.
    """

    def __init__(
        self,
        executable: str = DEFAULT_EXECUTABLE,
        *,
        extra_args: Sequence[str] = (),
    ) -> None:
        self.executable = executable
        self.extra_args = list(extra_args)
        self._process: Optional[subprocess.Popen[str]] = None
        self._lock = threading.Lock()
        self._interrupted = False
        self._timed_out = False

    def build_arguments(
        self,
        prompt: str,
        permission_mode: PermissionMode,
        session_id: Optional[str] = None,
    ) -> List[str]:
        args = [
            self.executable,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            permission_mode.value,
            *self.extra_args,
        ]
        if session_id:
            args.extend(["--resume", session_id])
        args.append(prompt)
        return args

    def execute(
        self,
        prompt: str,
        *,
        working_directory: Path,
        permission_mode: PermissionMode,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        on_message: Optional[MessageHandler] = None,
    ) -> AgentResult:
        command = self.build_arguments(prompt, permission_mode, session_id)
        try:
            process = subprocess.Popen(  # noqa: S603 - executable comes from preferences
                command,
                cwd=working_directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise AgentExecutableNotFoundError(
                f"Agent executable not found: {self.executable}"
            ) from error
        except OSError as error:
            raise AgentExecutableNotFoundError(
                f"Failed to launch {self.executable}: {error}"
            ) from error

        with self._lock:
            self._process = process
            self._interrupted = False
            self._timed_out = False

        stderr_chunks: List[str] = []
        stderr_thread = threading.Thread(
            target=_drain, args=(process.stderr, stderr_chunks), daemon=True
        )
        stderr_thread.start()

        timer: Optional[threading.Timer] = None
        if timeout is not None and timeout > 0:
            timer = threading.Timer(timeout, self._on_timeout, args=(process,))
            timer.daemon = True
            timer.start()

        result_message: Optional[ResultMessage] = None
        read_error: Optional[BaseException] = None
        try:
            assert process.stdout is not None
            for line in iter(process.stdout.readline, ""):
                message = parse_stream_line(line)
                if message is None:
                    continue
                if on_message is not None:
                    on_message(message)
                if isinstance(message, ResultMessage):
                    result_message = message
        except (OSError, ValueError) as error:
            read_error = error
        finally:
            if timer is not None:
                timer.cancel()
            returncode = self._wait(process)
            stderr_thread.join(timeout=_KILL_GRACE_SECONDS)
            with self._lock:
                self._process = None
                interrupted = self._interrupted
                timed_out = self._timed_out

        stderr_text = "".join(stderr_chunks)
        if timed_out:
            raise AgentProcessError(ProcessErrorKind.TIMED_OUT, stderr=stderr_text or None)
        if interrupted:
            raise AgentProcessError(ProcessErrorKind.INTERRUPTED, stderr=stderr_text or None)
        if read_error is not None:
            raise AgentProcessError(
                ProcessErrorKind.OUTPUT_READ_ERROR, stderr=str(read_error)
            ) from read_error
        if returncode != 0:
            raise AgentProcessError(
                ProcessErrorKind.NON_ZERO_EXIT,
                exit_code=returncode,
                stderr=stderr_text or None,
            )
        if result_message is None:
            raise AgentNoResultError()

        return AgentResult(
            result_text=result_message.result,
            session_id=result_message.session_id,
            total_cost=result_message.total_cost_usd,
            duration_ms=result_message.duration_ms,
            is_error=result_message.is_error,
        )

    def interrupt(self) -> None:
        with self._lock:
            process = self._process
            if process is None or process.poll() is not None:
                return
            self._interrupted = True
        LOGGER.debug("Interrupting agent process %s", process.pid)
        process.send_signal(signal.SIGINT)

    def terminate(self) -> None:
        with self._lock:
            process = self._process
            if process is None or process.poll() is not None:
                return
            self._interrupted = True
        LOGGER.debug("Terminating agent process %s", process.pid)
        process.terminate()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def _on_timeout(self, process: subprocess.Popen[str]) -> None:
        with self._lock:
            if process.poll() is not None:
                return
            self._timed_out = True
        LOGGER.warning("Agent process %s exceeded its timeout; terminating", process.pid)
        process.terminate()

    @staticmethod
    def _wait(process: subprocess.Popen[str]) -> int:
        try:
            return process.wait(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            return process.wait()


def _drain(stream, sink: List[str]) -> None:
    if stream is None:
        return
    for chunk in iter(stream.readline, ""):
        sink.append(chunk)


__all__ = ["ClaudeCLIClient", "DEFAULT_EXECUTABLE"]
