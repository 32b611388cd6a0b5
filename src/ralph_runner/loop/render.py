"""Plain line-oriented rendering of orchestrator events."""

from __future__ import annotations

from ralph_runner.loop.display import FAILURE_GLYPH, SUCCESS_GLYPH
from ralph_runner.loop.models import (
    AgentOutput,
    BatchComplete,
    CompletionSignalled,
    DisplayMessage,
    DisplaySource,
    ErrorReported,
    IterationCompleted,
    IterationEvent,
    IterationStarted,
    NoReadyTasks,
    RunFinished,
    StoryDetectionFailed,
    StoryMismatch,
    StoryStarted,
    TaskCompleted,
    TaskStarted,
)


def render_display_message(message: DisplayMessage) -> str:
    if message.source == DisplaySource.USER:
        return f"  {message.content}"
    return message.content


def render_event(event: IterationEvent) -> list[str]:  # noqa: PLR0911
    """Text lines for one event; streaming output renders only the new frames."""

    if isinstance(event, IterationStarted):
        return ["", f"━━━ Iteration {event.iteration}/{event.total} ━━━"]
    if isinstance(event, TaskStarted):
        task = event.task
        return [f"Task {task.id} [P{task.priority}] {task.title}"]
    if isinstance(event, StoryStarted):
        return [f"Story {event.story.id}: {event.story.title}"]
    if isinstance(event, AgentOutput):
        return [render_display_message(message) for message in event.new_messages]
    if isinstance(event, TaskCompleted):
        if event.success:
            return [f"{SUCCESS_GLYPH} {event.task_id} completed"]
        return [f"{FAILURE_GLYPH} {event.task_id} failed"]
    if isinstance(event, ErrorReported):
        return [f"Error: {event.message}"]
    if isinstance(event, NoReadyTasks):
        return ["No ready tasks."]
    if isinstance(event, BatchComplete):
        scope = event.scope_id or "all tickets"
        return [f"All tasks of {scope} are closed or blocked."]
    if isinstance(event, CompletionSignalled):
        return ["Agent signalled completion."]
    if isinstance(event, StoryMismatch):
        return [f"Agent worked on {event.detected_id} instead of {event.expected_id}."]
    if isinstance(event, StoryDetectionFailed):
        return [f"Could not detect the story worked on; marking {event.fallback_id}."]
    if isinstance(event, IterationCompleted):
        return [f"Iteration {event.iteration} complete."]
    if isinstance(event, RunFinished):
        return ["", f"Run finished: {event.reason.message}"]
    raise TypeError(f"Unsupported event: {event!r}")
