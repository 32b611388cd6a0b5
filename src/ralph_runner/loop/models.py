"""Domain models for the iteration loop: tasks, stream frames, events."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    """Tracker lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskType(str, Enum):
    """Closed set of tracker issue types."""

    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    EPIC = "epic"


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable snapshot of one tracker issue as returned by a single query."""

    id: str
    title: str
    type: TaskType
    status: TaskStatus
    priority: int
    blocked_by: tuple[str, ...] = ()
    blocks: tuple[str, ...] = ()
    parent: str | None = None
    labels: tuple[str, ...] = ()
    description: str = ""


class TrackerErrorCode(str, Enum):
    """Tracker query failure kinds."""

    NOT_INITIALIZED = "not_initialized"
    COMMAND_FAILED = "command_failed"
    PARSE_FAILED = "parse_failed"


class AgentFailureKind(str, Enum):
    """Agent process failure kinds; only ABORTED ends a run."""

    SPAWN_FAILED = "spawn_failed"
    PROCESS_ERROR = "process_error"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class AgentFailure:
    """Why one agent invocation did not succeed."""

    kind: AgentFailureKind
    message: str
    exit_code: int | None = None


@dataclass(frozen=True, slots=True)
class AgentRunOutcome:
    """Resolved result of one agent invocation."""

    success: bool
    exit_code: int | None = None
    failure: AgentFailure | None = None

    @classmethod
    def succeeded(cls, exit_code: int = 0) -> AgentRunOutcome:
        return cls(success=True, exit_code=exit_code)

    @classmethod
    def failed(
        cls,
        kind: AgentFailureKind,
        message: str,
        *,
        exit_code: int | None = None,
    ) -> AgentRunOutcome:
        return cls(
            success=False,
            exit_code=exit_code,
            failure=AgentFailure(kind=kind, message=message, exit_code=exit_code),
        )

    @property
    def aborted(self) -> bool:
        return self.failure is not None and self.failure.kind == AgentFailureKind.ABORTED


# -- stream protocol frames -------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    content: str
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    """Agent turn: narrative text and tool invocations."""

    blocks: tuple[TextBlock | ToolUseBlock, ...]


@dataclass(frozen=True, slots=True)
class UserMessage:
    """Tool results fed back to the agent.

    ``raw_tool_output`` carries the protocol's ``tool_use_result`` field, which
    is either a mapping with ``stdout``/``stderr``/``is_error`` or a bare string.
    """

    blocks: tuple[ToolResultBlock, ...]
    raw_tool_output: dict[str, Any] | str | None = None


@dataclass(frozen=True, slots=True)
class SystemMessage:
    """Session metadata frame (init etc.); never displayed."""


@dataclass(frozen=True, slots=True)
class ResultMessage:
    """Final summary frame of one agent invocation."""

    is_error: bool = False
    duration_ms: int | None = None
    cost_usd: float | None = None


StreamMessage = AssistantMessage | UserMessage | SystemMessage | ResultMessage


class DisplaySource(str, Enum):
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class DisplayMessage:
    """Single-line, human-facing projection of one stream frame."""

    source: DisplaySource
    content: str


# -- legacy backlog document ------------------------------------------------


@dataclass(slots=True)
class UserStory:
    """One entry of the legacy backlog document."""

    id: str
    title: str
    acceptance_criteria: list[str]
    priority: int
    passes: bool
    notes: str


@dataclass(slots=True)
class BacklogDocument:
    """Root object of the legacy backlog document."""

    branch_name: str
    user_stories: list[UserStory]


# -- workflows --------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TrackerWorkflow:
    """Tracker-backed workflow.

    ``scope_id`` limits work to the children of one ticket; ``None`` means all
    open tickets and lets the agent discover its own work.
    """

    scope_id: str | None = None
    scope_title: str | None = None
    auto_close: bool = True


@dataclass(frozen=True, slots=True)
class LegacyDocumentWorkflow:
    """Backward-compatible workflow driven by a single JSON backlog document."""

    document_path: Path


Workflow = TrackerWorkflow | LegacyDocumentWorkflow


# -- run state and events ---------------------------------------------------


class CompletionReason(str, Enum):
    """Terminal states of one orchestrator run."""

    FINISHED = "finished"
    BATCH_COMPLETE = "batch_complete"
    ALL_PASSED = "all_passed"
    NO_READY_TASKS = "no_ready_tasks"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def message(self) -> str:
        return _REASON_MESSAGES[self]


_REASON_MESSAGES: dict[CompletionReason, str] = {
    CompletionReason.FINISHED: "All iterations completed",
    CompletionReason.BATCH_COMPLETE: "All tasks closed or blocked",
    CompletionReason.ALL_PASSED: "All stories passed",
    CompletionReason.NO_READY_TASKS: "No ready tasks - all blocked",
    CompletionReason.STOPPED: "Stopped by user",
    CompletionReason.ERROR: "Stopped due to error",
}


@dataclass(slots=True)
class IterationRun:
    """Mutable bookkeeping for one orchestrator invocation."""

    iterations_requested: int
    iterations_completed: int = 0
    current_task_id: str | None = None
    cancel_requested: bool = False
    stop_after_current: bool = False


@dataclass(frozen=True, slots=True)
class IterationStarted:
    iteration: int
    total: int


@dataclass(frozen=True, slots=True)
class TaskStarted:
    task: Task


@dataclass(frozen=True, slots=True)
class StoryStarted:
    story: UserStory


@dataclass(frozen=True, slots=True)
class AgentOutput:
    """Display update after one output chunk.

    ``new_messages`` holds the frames decoded from this chunk only; ``view`` is
    the filtered projection of everything decoded so far in the iteration.
    """

    new_messages: tuple[DisplayMessage, ...]
    view: tuple[DisplayMessage, ...]


@dataclass(frozen=True, slots=True)
class TaskCompleted:
    task_id: str
    success: bool


@dataclass(frozen=True, slots=True)
class ErrorReported:
    message: str


@dataclass(frozen=True, slots=True)
class NoReadyTasks:
    pass


@dataclass(frozen=True, slots=True)
class BatchComplete:
    scope_id: str | None


@dataclass(frozen=True, slots=True)
class CompletionSignalled:
    task_id: str | None


@dataclass(frozen=True, slots=True)
class StoryMismatch:
    expected_id: str
    detected_id: str


@dataclass(frozen=True, slots=True)
class StoryDetectionFailed:
    fallback_id: str


@dataclass(frozen=True, slots=True)
class IterationCompleted:
    iteration: int


@dataclass(frozen=True, slots=True)
class RunFinished:
    reason: CompletionReason


IterationEvent = (
    IterationStarted
    | TaskStarted
    | StoryStarted
    | AgentOutput
    | TaskCompleted
    | ErrorReported
    | NoReadyTasks
    | BatchComplete
    | CompletionSignalled
    | StoryMismatch
    | StoryDetectionFailed
    | IterationCompleted
    | RunFinished
)
