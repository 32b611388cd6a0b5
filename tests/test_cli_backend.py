from __future__ import annotations

import json
import os
import subprocess
import threading
import time
from pathlib import Path

import allure
import pytest

from ralph_runner.loop.backend import AgentRunRequest, ClaudeCliBackend
from ralph_runner.loop.backend.cli_backend import STREAM_JSON_FLAGS
from ralph_runner.loop.control import RunControl
from ralph_runner.loop.models import AgentFailureKind, AssistantMessage, ResultMessage, TextBlock
from ralph_runner.loop.protocol import decode_text

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Backend"),
]


def _backend(echo_agent_command, *agent_args: str) -> ClaudeCliBackend:
    command, leading = echo_agent_command
    return ClaudeCliBackend(command=command, extra_args=(*leading, *agent_args))


def _drain(backend: ClaudeCliBackend, request: AgentRunRequest):
    session = backend.start(request)
    chunks = list(session.chunks())
    return chunks, session.wait()


def test_build_args_places_prompt_after_stream_flags() -> None:
    backend = ClaudeCliBackend(command="claude", extra_args=("--model", "opus"))

    assert backend.build_args("do it") == [
        "claude",
        "--model",
        "opus",
        *STREAM_JSON_FLAGS,
        "--print",
        "do it",
    ]


def test_streams_multibyte_output_split_across_reads(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--text", "grüße ✓ 完成", "--byte-by-byte")

    chunks, outcome = _drain(backend, AgentRunRequest(prompt="hi"))

    assert outcome.success
    assert outcome.exit_code == 0
    messages = decode_text("".join(chunks))
    assert AssistantMessage(blocks=(TextBlock(text="grüße ✓ 完成"),)) in messages
    assert isinstance(messages[-1], ResultMessage)
    assert "�" not in "".join(chunks)


def test_prompt_is_passed_to_the_agent(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--echo-prompt")

    chunks, outcome = _drain(backend, AgentRunRequest(prompt="Work on T-1"))

    assert outcome.success
    assert AssistantMessage(blocks=(TextBlock(text="Work on T-1"),)) in decode_text(
        "".join(chunks),
    )


def test_non_zero_exit_reports_stderr(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--exit-code", "2", "--stderr", "agent broke\n")

    _, outcome = _drain(backend, AgentRunRequest(prompt="x"))

    assert not outcome.success
    assert outcome.exit_code == 2
    assert outcome.failure is not None
    assert outcome.failure.kind == AgentFailureKind.PROCESS_ERROR
    assert outcome.failure.message == "agent broke"


def test_non_zero_exit_without_stderr_names_exit_code(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--exit-code", "3")

    _, outcome = _drain(backend, AgentRunRequest(prompt="x"))

    assert outcome.failure is not None
    assert outcome.failure.message == "Agent process exited with code 3"


def test_missing_binary_is_spawn_failed(tmp_path: Path) -> None:
    backend = ClaudeCliBackend(command=str(tmp_path / "no-such-agent"))

    chunks, outcome = _drain(backend, AgentRunRequest(prompt="x"))

    assert chunks == []
    assert outcome.failure is not None
    assert outcome.failure.kind == AgentFailureKind.SPAWN_FAILED


def test_cancel_terminates_running_agent(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--text", "working", "--sleep", "30")
    control = RunControl()
    timer = threading.Timer(0.5, control.cancel)

    started = time.monotonic()
    timer.start()
    try:
        _, outcome = _drain(backend, AgentRunRequest(prompt="x", control=control))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 15
    assert outcome.aborted


def test_raw_output_is_appended_to_log_file(echo_agent_command, tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "agent.log"
    log_file.parent.mkdir()
    log_file.write_text("previous run\n", "utf-8")
    backend = _backend(echo_agent_command, "--text", "logged")

    chunks, outcome = _drain(backend, AgentRunRequest(prompt="x", log_file=log_file))

    assert outcome.success
    assert log_file.read_text("utf-8") == "previous run\n" + "".join(chunks)


@pytest.mark.skipif(not hasattr(os, "killpg"), reason="process groups unavailable")
def test_agent_runs_in_its_own_process_group(echo_agent_command) -> None:
    backend = _backend(echo_agent_command, "--sleep", "30")
    control = RunControl()
    session = backend.start(AgentRunRequest(prompt="x", control=control))
    pid = session._process.pid

    try:
        assert os.getpgid(pid) == pid
        assert os.getpgid(pid) != os.getpgrp()
    finally:
        control.cancel()
        outcome = session.wait()

    assert outcome.aborted


_INTERRUPTED_RUN_SCRIPT = """\
import json
import os
import signal
import sys
import threading

from ralph_runner.loop.backend import ClaudeCliBackend
from ralph_runner.loop.control import RunControl
from ralph_runner.loop.controllers import _signal_handlers
from ralph_runner.loop.models import Task, TaskStatus, TaskType, TrackerWorkflow
from ralph_runner.loop.orchestrator import IterationOrchestrator
from ralph_runner.loop.prompts import PromptGenerator

TASK = Task(id="T1", title="one", type=TaskType.TASK, status=TaskStatus.OPEN, priority=1)


class Tracker:
    def __init__(self):
        self.comments = []

    def list_ready(self, parent=None):
        return [TASK]

    def list_children(self, parent):
        return [TASK]

    def list_open(self):
        return [TASK]

    def add_comment(self, task_id, text):
        self.comments.append(text)

    def close(self, task_id):
        pass


tracker = Tracker()
orchestrator = IterationOrchestrator(
    tracker=tracker,
    backend=ClaudeCliBackend(command=sys.executable, extra_args=sys.argv[1:]),
    prompt_generator=PromptGenerator("$TASK_ID"),
)
control = RunControl()
threading.Timer(0.7, os.killpg, (os.getpgrp(), signal.SIGINT)).start()
events = []
with _signal_handlers(control):
    for event in orchestrator.run(TrackerWorkflow(scope_id="epic-1"), 3, control):
        events.append(
            {
                "kind": type(event).__name__,
                "success": getattr(event, "success", None),
                "reason": getattr(getattr(event, "reason", None), "value", None),
            },
        )
print(json.dumps({"events": events, "comments": tracker.comments}))
"""


@pytest.mark.skipif(not hasattr(os, "killpg"), reason="process groups unavailable")
def test_terminal_interrupt_lets_running_agent_finish(echo_agent_command, tmp_path: Path) -> None:
    command, leading = echo_agent_command
    script = tmp_path / "interrupted_run.py"
    script.write_text(_INTERRUPTED_RUN_SCRIPT, "utf-8")

    # Own session so the group-wide SIGINT stays inside the helper's group.
    completed = subprocess.run(  # noqa: S603
        [command, str(script), *leading, "--text", "working", "--sleep", "2"],
        capture_output=True,
        text=True,
        check=False,
        timeout=60,
        start_new_session=True,
    )

    assert completed.returncode == 0, completed.stderr
    report = json.loads(completed.stdout.strip().splitlines()[-1])
    events = report["events"]
    assert {"kind": "TaskCompleted", "success": True, "reason": None} in events
    assert events[-1] == {"kind": "RunFinished", "success": None, "reason": "stopped"}
    assert sum(1 for event in events if event["kind"] == "IterationStarted") == 1
    assert report["comments"] == []
