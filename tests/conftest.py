"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ralph_runner.loop.backend.base import AgentRunRequest
from ralph_runner.loop.models import (
    AgentFailureKind,
    AgentRunOutcome,
    Task,
    TaskStatus,
    TaskType,
)
from ralph_runner.loop.tracker import TrackerError

ECHO_AGENT_ARGS = ("-m", "ralph_runner.loop.backend.echo_agent")
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def make_task(  # noqa: PLR0913
    task_id: str,
    *,
    priority: int = 2,
    status: TaskStatus = TaskStatus.OPEN,
    blocked_by: tuple[str, ...] = (),
    labels: tuple[str, ...] = (),
    task_type: TaskType = TaskType.TASK,
    parent: str | None = "epic-1",
) -> Task:
    return Task(
        id=task_id,
        title=f"Title {task_id}",
        type=task_type,
        status=status,
        priority=priority,
        blocked_by=blocked_by,
        parent=parent,
        labels=labels,
    )


class FakeTracker:
    """In-memory tracker recording every call."""

    def __init__(self) -> None:
        self.ready: list[Task] = []
        self.children: list[Task] = []
        self.open_tasks: list[Task] = []
        self.ready_error: TrackerError | None = None
        self.children_error: TrackerError | None = None
        self.comment_error: TrackerError | None = None
        self.close_error: TrackerError | None = None
        self.calls: list[tuple[str, str | None]] = []
        self.comments: list[tuple[str, str]] = []
        self.closed: list[str] = []

    def list_ready(self, parent: str | None = None) -> list[Task]:
        self.calls.append(("ready", parent))
        if self.ready_error is not None:
            raise self.ready_error
        return list(self.ready)

    def list_children(self, parent: str) -> list[Task]:
        self.calls.append(("children", parent))
        if self.children_error is not None:
            raise self.children_error
        return list(self.children)

    def list_open(self) -> list[Task]:
        self.calls.append(("open", None))
        return list(self.open_tasks)

    def add_comment(self, task_id: str, text: str) -> None:
        self.calls.append(("comment", task_id))
        if self.comment_error is not None:
            raise self.comment_error
        self.comments.append((task_id, text))

    def close(self, task_id: str) -> None:
        self.calls.append(("close", task_id))
        if self.close_error is not None:
            raise self.close_error
        self.closed.append(task_id)


@dataclass(slots=True)
class FakeScript:
    """What one fake agent invocation emits and how it ends."""

    chunks: list[str] = field(default_factory=list)
    outcome: AgentRunOutcome = field(default_factory=AgentRunOutcome.succeeded)
    before_chunk: Callable[[int], None] | None = None
    on_finish: Callable[[], None] | None = None


class FakeSession:
    def __init__(self, script: FakeScript, request: AgentRunRequest) -> None:
        self._script = script
        self.aborted = False
        self._unregister = (
            request.control.add_cancel_callback(self.abort) if request.control else None
        )

    def chunks(self) -> Iterator[str]:
        for index, chunk in enumerate(self._script.chunks):
            if self._script.before_chunk is not None:
                self._script.before_chunk(index)
            if self.aborted:
                return
            yield chunk

    def wait(self) -> AgentRunOutcome:
        if self._unregister is not None:
            self._unregister()
        if self._script.on_finish is not None:
            self._script.on_finish()
        if self.aborted:
            return AgentRunOutcome.failed(AgentFailureKind.ABORTED, "aborted", exit_code=-15)
        return self._script.outcome

    def abort(self) -> None:
        self.aborted = True


class FakeBackend:
    """Plays scripts in order; the last one repeats."""

    def __init__(self, *scripts: FakeScript) -> None:
        self.scripts = list(scripts) or [FakeScript()]
        self.requests: list[AgentRunRequest] = []
        self.sessions: list[FakeSession] = []

    def start(self, request: AgentRunRequest) -> FakeSession:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.scripts) - 1)
        session = FakeSession(self.scripts[index], request)
        self.sessions.append(session)
        return session


@pytest.fixture()
def fake_tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def echo_agent_command(monkeypatch) -> tuple[str, tuple[str, ...]]:
    """Command and leading args that run the deterministic echo agent."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [str(_SRC_DIR), existing])),
    )
    return sys.executable, ECHO_AGENT_ARGS
