"""Backend interface for agent invocations."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ralph_runner.loop.control import RunControl
from ralph_runner.loop.models import AgentRunOutcome


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent once."""

    prompt: str
    control: RunControl | None = None
    log_file: Path | None = None
    cwd: Path | None = None


class AgentSession(Protocol):
    """One running agent invocation."""

    def chunks(self) -> Iterator[str]:
        """Yield decoded stdout text as it arrives, until the stream closes."""

    def wait(self) -> AgentRunOutcome:
        """Block until the process exits and classify the outcome."""

    def abort(self) -> None:
        """Terminate the process; the outcome becomes ``aborted``."""


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def start(self, request: AgentRunRequest) -> AgentSession:
        """Start one invocation; failures surface through the session outcome."""
