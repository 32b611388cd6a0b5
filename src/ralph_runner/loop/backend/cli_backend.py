"""Subprocess-based backend that runs a CLI agent in stream-json mode."""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import IO

from ralph_runner.loop.backend.base import AgentRunRequest
from ralph_runner.loop.models import AgentFailureKind, AgentRunOutcome

logger = logging.getLogger(__name__)

STREAM_JSON_FLAGS: tuple[str, ...] = (
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
)

_READ_SIZE = 65536


class ClaudeCliBackend:
    """Spawn the agent CLI once per request and stream its stdout."""

    def __init__(
        self,
        *,
        command: str = "claude",
        extra_args: Sequence[str] = (),
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.command = command
        self.extra_args = tuple(extra_args)
        self.kill_grace_seconds = kill_grace_seconds

    def build_args(self, prompt: str) -> list[str]:
        return [self.command, *self.extra_args, *STREAM_JSON_FLAGS, "--print", prompt]

    def start(self, request: AgentRunRequest) -> CliAgentSession:
        return CliAgentSession(
            args=self.build_args(request.prompt),
            request=request,
            kill_grace_seconds=self.kill_grace_seconds,
        )


class CliAgentSession:
    """Running agent process.

    ``chunks()`` reads whatever bytes the pipe has (``read1``) and decodes them
    with an incremental UTF-8 decoder, so a multi-byte character split across
    two reads is emitted intact. stderr is drained on a helper thread and only
    used for the failure message.
    """

    def __init__(
        self,
        *,
        args: list[str],
        request: AgentRunRequest,
        kill_grace_seconds: float,
    ) -> None:
        self._kill_grace_seconds = kill_grace_seconds
        self._abort_requested = threading.Event()
        self._stderr_parts: list[bytes] = []
        self._stderr_thread: threading.Thread | None = None
        self._kill_timer: threading.Timer | None = None
        self._outcome: AgentRunOutcome | None = None
        self._log_handle: IO[str] | None = None
        self._unregister = None
        self._process: subprocess.Popen[bytes] | None = None

        try:
            self._process = subprocess.Popen(  # noqa: S603
                args,
                cwd=request.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                # Own session: terminal SIGINT reaches the runner, not the agent.
                start_new_session=True,
            )
        except OSError as error:
            logger.warning("Failed to spawn agent %s: %s", args[0], error)
            self._outcome = AgentRunOutcome.failed(
                AgentFailureKind.SPAWN_FAILED,
                f"Failed to spawn agent process: {error}",
            )
            return

        logger.debug("Agent process started: pid=%s", self._process.pid)
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            daemon=True,
            name="agent-stderr",
        )
        self._stderr_thread.start()
        if request.log_file is not None:
            self._log_handle = _open_log(request.log_file)
        if request.control is not None:
            self._unregister = request.control.add_cancel_callback(self.abort)

    def chunks(self) -> Iterator[str]:
        process = self._process
        if process is None or process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = process.stdout.read1(_READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                self._log(text)
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            self._log(tail)
            yield tail

    def wait(self) -> AgentRunOutcome:
        if self._outcome is not None:
            return self._outcome
        process = self._process
        assert process is not None
        # Drain stdout so the child never blocks on a full pipe.
        for _ in self.chunks():
            pass
        returncode = process.wait()
        if self._stderr_thread is not None:
            self._stderr_thread.join()
        self._cleanup()

        stderr = b"".join(self._stderr_parts).decode("utf-8", errors="replace").strip()
        self._outcome = self._classify(returncode, stderr)
        logger.debug("Agent process exited: code=%s outcome=%s", returncode, self._outcome)
        return self._outcome

    def abort(self) -> None:
        """Send SIGTERM now and SIGKILL after the grace period."""

        if self._abort_requested.is_set():
            return
        self._abort_requested.set()
        process = self._process
        if process is None or process.poll() is not None:
            return
        logger.info("Terminating agent process pid=%s", process.pid)
        try:
            _signal_agent(process, kill=False)
        except OSError:
            return
        self._kill_timer = threading.Timer(self._kill_grace_seconds, self._kill_if_running)
        self._kill_timer.daemon = True
        self._kill_timer.start()

    def _classify(self, returncode: int, stderr: str) -> AgentRunOutcome:
        if self._abort_requested.is_set() and returncode != 0:
            return AgentRunOutcome.failed(
                AgentFailureKind.ABORTED,
                "Agent process aborted",
                exit_code=returncode,
            )
        if returncode == 0:
            return AgentRunOutcome.succeeded()
        if returncode < 0:
            message = stderr or f"Agent process killed by signal {_signal_name(-returncode)}"
        else:
            message = stderr or f"Agent process exited with code {returncode}"
        return AgentRunOutcome.failed(
            AgentFailureKind.PROCESS_ERROR,
            message,
            exit_code=returncode,
        )

    def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        for line in process.stderr:
            self._stderr_parts.append(line)

    def _kill_if_running(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        logger.warning("Agent process pid=%s ignored SIGTERM, killing", process.pid)
        try:
            _signal_agent(process, kill=True)
        except OSError:
            return

    def _log(self, text: str) -> None:
        if self._log_handle is None:
            return
        self._log_handle.write(text)
        self._log_handle.flush()

    def _cleanup(self) -> None:
        if self._kill_timer is not None:
            self._kill_timer.cancel()
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
        process = self._process
        if process is not None:
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()


def _open_log(path: Path) -> IO[str] | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("a", encoding="utf-8")
    except OSError as error:
        logger.warning("Cannot open agent log file %s: %s", path, error)
        return None


def _signal_agent(process: subprocess.Popen[bytes], *, kill: bool) -> None:
    """Signal the agent's whole process group so its tool subprocesses stop too."""

    if not hasattr(os, "killpg"):
        if kill:
            process.kill()
        else:
            process.terminate()
        return
    os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return str(number)
