"""Controllers for ralph CLI commands."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ralph_runner.config import Settings
from ralph_runner.loop.backend import ClaudeCliBackend
from ralph_runner.loop.control import RunControl
from ralph_runner.loop.models import (
    CompletionReason,
    LegacyDocumentWorkflow,
    RunFinished,
    Task,
    TrackerWorkflow,
    Workflow,
)
from ralph_runner.loop.orchestrator import IterationOrchestrator
from ralph_runner.loop.prompts import PromptGenerator
from ralph_runner.loop.render import render_event
from ralph_runner.loop.selection import find_next_ready, is_blocked, is_held
from ralph_runner.loop.tracker import BeadsTracker, TrackerError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for an unattended iteration run."""

    iterations: int
    ticket_id: str | None = None
    all_tickets: bool = False
    prd_path: Path | None = None
    log_file: Path | None = None
    auto_close: bool = True


@dataclass(slots=True)
class RunReport:
    """Filled in while the run streams; read after the lines are consumed."""

    reason: CompletionReason | None = None

    @property
    def failed(self) -> bool:
        return self.reason == CompletionReason.ERROR


@dataclass(slots=True)
class NextTaskCommand:
    """CLI input for previewing the next selected task."""

    ticket_id: str | None = None


@dataclass(slots=True)
class BlockersCommand:
    """CLI input for listing blockers outside a ticket."""

    ticket_id: str


class RalphCliController:
    """Coordinates tracker queries and orchestrator runs for the CLI."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
            self._settings.validate()
        return self._settings

    def run(self, command: RunCommand, report: RunReport) -> Iterator[str]:
        """Run the orchestrator, yielding rendered lines as events arrive.

        The first SIGINT/SIGTERM asks for a stop after the current iteration;
        the second one terminates the agent immediately.
        """

        settings = self.settings
        tracker = self._tracker()
        workflow = self._workflow(command, tracker)
        ticket_id = workflow.scope_id if isinstance(workflow, TrackerWorkflow) else None
        ticket_title = workflow.scope_title if isinstance(workflow, TrackerWorkflow) else None
        orchestrator = IterationOrchestrator(
            tracker=tracker,
            backend=ClaudeCliBackend(
                command=settings.agent.command,
                extra_args=settings.agent.extra_args,
                kill_grace_seconds=settings.agent.kill_grace_seconds,
            ),
            prompt_generator=PromptGenerator.for_project(
                settings.run.ralph_dir,
                ticket_id=ticket_id,
                ticket_title=ticket_title,
                document=isinstance(workflow, LegacyDocumentWorkflow),
            ),
            hold_label=settings.tracker.hold_label,
            completion_sentinel=settings.run.completion_sentinel,
            log_file=command.log_file or settings.run.log_file,
        )

        control = RunControl()
        with _signal_handlers(control):
            for event in orchestrator.run(workflow, command.iterations, control):
                if isinstance(event, RunFinished):
                    report.reason = event.reason
                yield from render_event(event)

    def next_task(self, command: NextTaskCommand) -> list[str]:
        tracker = self._tracker()
        try:
            ready = tracker.list_ready(command.ticket_id)
        except TrackerError as error:
            return [f"Error: {error}"]
        hold_label = self.settings.tracker.hold_label
        task = find_next_ready(ready, hold_label)
        held = sum(1 for item in ready if is_held(item, hold_label))
        if task is None:
            lines = ["No ready tasks."]
        else:
            lines = [_task_line(task)]
        if held:
            lines.append(f"Held tasks skipped: {held}")
        return lines

    def list_tickets(self) -> list[str]:
        tracker = self._tracker()
        try:
            tickets = tracker.list_tickets()
        except TrackerError as error:
            return [f"Error: {error}"]
        if not tickets:
            return ["No open tickets."]
        lines = []
        for ticket in tickets:
            marker = " (blocked tasks)" if ticket.has_blocked_tasks else ""
            lines.append(
                f"{ticket.id:12s} {ticket.type.value:8s} {ticket.progress:3d}% "
                f"{ticket.closed_count}/{ticket.closed_count + ticket.open_count} "
                f"{ticket.title}{marker}",
            )
        return lines

    def list_blockers(self, command: BlockersCommand) -> list[str]:
        tracker = self._tracker()
        try:
            blockers = tracker.list_external_blockers(command.ticket_id)
        except TrackerError as error:
            return [f"Error: {error}"]
        if not blockers:
            return [f"No external blockers for {command.ticket_id}."]
        lines = [f"External blockers for {command.ticket_id}:"]
        for blocker in blockers:
            state = "blocked" if is_blocked(blocker) else blocker.status.value
            lines.append(f"  {_task_line(blocker)} ({state})")
        return lines

    def _tracker(self) -> BeadsTracker:
        settings = self.settings
        return BeadsTracker(
            bd_command=settings.tracker.bd_command,
            beads_dir=settings.tracker.beads_dir,
            hold_label=settings.tracker.hold_label,
        )

    def _workflow(self, command: RunCommand, tracker: BeadsTracker) -> Workflow:
        if command.prd_path is not None:
            return LegacyDocumentWorkflow(document_path=command.prd_path)
        if command.all_tickets:
            return TrackerWorkflow(scope_id=None, auto_close=False)

        ticket_title = None
        try:
            ticket = tracker.show(command.ticket_id) if command.ticket_id else None
        except TrackerError as error:
            logger.warning("Cannot load ticket %s: %s", command.ticket_id, error)
            ticket = None
        if ticket is not None:
            ticket_title = ticket.title
        return TrackerWorkflow(
            scope_id=command.ticket_id,
            scope_title=ticket_title,
            auto_close=command.auto_close and self.settings.run.auto_close,
        )


def _task_line(task: Task) -> str:
    return f"{task.id} [P{task.priority}] {task.title}"


@contextmanager
def _signal_handlers(control: RunControl) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        if control.stop_requested:
            logger.warning("%s received again, terminating agent", name)
            control.cancel()
            return
        logger.warning("%s received, stopping after the current iteration", name)
        control.request_stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
