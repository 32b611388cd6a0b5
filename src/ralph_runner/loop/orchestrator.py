"""Iteration orchestrator: select work, run the agent once, resolve, repeat."""

from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from pathlib import Path

from ralph_runner.loop.backend.base import AgentBackend, AgentRunRequest
from ralph_runner.loop.control import RunControl
from ralph_runner.loop.display import (
    DEFAULT_COMPLETION_SENTINEL,
    StreamTranscript,
    contains_completion_sentinel,
    format_message,
)
from ralph_runner.loop.legacy import (
    DocumentError,
    detect_story_id,
    read_document,
    update_story_status,
)
from ralph_runner.loop.models import (
    AgentFailureKind,
    AgentOutput,
    AgentRunOutcome,
    BacklogDocument,
    BatchComplete,
    CompletionReason,
    CompletionSignalled,
    ErrorReported,
    IterationCompleted,
    IterationEvent,
    IterationRun,
    IterationStarted,
    LegacyDocumentWorkflow,
    NoReadyTasks,
    RunFinished,
    StoryDetectionFailed,
    StoryMismatch,
    StoryStarted,
    StreamMessage,
    Task,
    TaskCompleted,
    TaskStarted,
    TaskType,
    TrackerWorkflow,
    UserStory,
    Workflow,
)
from ralph_runner.loop.prompts import PromptGenerator
from ralph_runner.loop.selection import (
    DEFAULT_HOLD_LABEL,
    find_next_incomplete_story,
    find_next_ready,
    is_batch_complete,
)
from ralph_runner.loop.tracker import Tracker, TrackerError

logger = logging.getLogger(__name__)

_EventStream = Generator[IterationEvent, None, CompletionReason]


class IterationOrchestrator:
    """Drive up to N sequential agent invocations against a work backlog.

    ``run()`` is a generator: the caller pulls events, and the agent process
    only makes progress while the caller iterates. ``RunFinished`` is always
    the last event.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tracker: Tracker,
        backend: AgentBackend,
        prompt_generator: PromptGenerator,
        hold_label: str = DEFAULT_HOLD_LABEL,
        completion_sentinel: str = DEFAULT_COMPLETION_SENTINEL,
        log_file: Path | None = None,
        cwd: Path | None = None,
    ) -> None:
        self._tracker = tracker
        self._backend = backend
        self._prompts = prompt_generator
        self._hold_label = hold_label
        self._sentinel = completion_sentinel
        self._log_file = log_file
        self._cwd = cwd

    def run(
        self,
        workflow: Workflow,
        iterations: int,
        control: RunControl | None = None,
    ) -> Iterator[IterationEvent]:
        control = control or RunControl()
        state = IterationRun(iterations_requested=iterations)
        if isinstance(workflow, TrackerWorkflow):
            reason = yield from self._run_tracker(workflow, state, control)
        elif isinstance(workflow, LegacyDocumentWorkflow):
            reason = yield from self._run_document(workflow, state, control)
        else:
            raise TypeError(f"Unsupported workflow: {workflow!r}")
        logger.info(
            "Run finished: reason=%s iterations=%d/%d",
            reason.value,
            state.iterations_completed,
            state.iterations_requested,
        )
        yield RunFinished(reason=reason)

    # -- tracker workflow -----------------------------------------------------

    def _run_tracker(
        self,
        workflow: TrackerWorkflow,
        state: IterationRun,
        control: RunControl,
    ) -> _EventStream:
        scope_id = workflow.scope_id
        for iteration in range(1, state.iterations_requested + 1):
            if _cancelled(state, control):
                return CompletionReason.STOPPED
            yield IterationStarted(iteration=iteration, total=state.iterations_requested)

            try:
                ready = self._tracker.list_ready(scope_id)
            except TrackerError as error:
                logger.error("Ready-task query failed: %s", error)
                yield ErrorReported(message=str(error))
                return CompletionReason.ERROR

            task = find_next_ready(ready, self._hold_label)
            if task is None:
                yield NoReadyTasks()
                if self._scope_complete(workflow):
                    self._close_scope(workflow)
                    yield BatchComplete(scope_id=scope_id)
                    return CompletionReason.BATCH_COMPLETE
                return CompletionReason.NO_READY_TASKS

            state.current_task_id = task.id
            logger.info("Iteration %d: task %s", iteration, task.id)
            yield TaskStarted(task=task)

            outcome, transcript = yield from self._invoke_agent(
                self._prompts.generate(task=task),
                control,
            )
            if outcome.aborted:
                yield TaskCompleted(task_id=task.id, success=False)
                return CompletionReason.STOPPED
            if outcome.success:
                yield TaskCompleted(task_id=task.id, success=True)
            else:
                message = _failure_message(outcome)
                yield ErrorReported(message=message)
                self._comment_failure(task, message)
                yield TaskCompleted(task_id=task.id, success=False)

            state.iterations_completed = iteration
            state.current_task_id = None
            yield IterationCompleted(iteration=iteration)

            signalled = contains_completion_sentinel(transcript.plain_text(), self._sentinel)
            if signalled:
                yield CompletionSignalled(task_id=task.id)
            if self._scope_complete(workflow):
                self._close_scope(workflow)
                yield BatchComplete(scope_id=scope_id)
                return CompletionReason.BATCH_COMPLETE
            if signalled:
                logger.info("Agent signalled completion; tracker still shows ready work")
                return CompletionReason.BATCH_COMPLETE

            if control.stop_requested:
                state.stop_after_current = True
                return CompletionReason.STOPPED
        return CompletionReason.FINISHED

    def _scope_tasks(self, workflow: TrackerWorkflow) -> list[Task]:
        if workflow.scope_id is not None:
            return self._tracker.list_children(workflow.scope_id)
        return [task for task in self._tracker.list_open() if task.type != TaskType.EPIC]

    def _scope_complete(self, workflow: TrackerWorkflow) -> bool:
        try:
            tasks = self._scope_tasks(workflow)
        except TrackerError as error:
            logger.warning("Completeness query failed, assuming work remains: %s", error)
            return False
        return is_batch_complete(tasks)

    def _close_scope(self, workflow: TrackerWorkflow) -> None:
        if not workflow.auto_close or workflow.scope_id is None:
            return
        try:
            self._tracker.close(workflow.scope_id)
        except TrackerError as error:
            logger.warning("Failed to close ticket %s: %s", workflow.scope_id, error)
        else:
            logger.info("Closed ticket %s", workflow.scope_id)

    def _comment_failure(self, task: Task, message: str) -> None:
        try:
            self._tracker.add_comment(task.id, f"Iteration failed: {message}")
        except TrackerError as error:
            logger.warning("Failed to comment on task %s: %s", task.id, error)

    # -- legacy document workflow ---------------------------------------------

    def _run_document(
        self,
        workflow: LegacyDocumentWorkflow,
        state: IterationRun,
        control: RunControl,
    ) -> _EventStream:
        path = workflow.document_path
        for iteration in range(1, state.iterations_requested + 1):
            if _cancelled(state, control):
                return CompletionReason.STOPPED
            yield IterationStarted(iteration=iteration, total=state.iterations_requested)

            try:
                document = read_document(path)
            except DocumentError as error:
                logger.error("Cannot load backlog document %s: %s", path, error)
                yield ErrorReported(message=str(error))
                return CompletionReason.ERROR

            story = find_next_incomplete_story(document.user_stories)
            if story is None:
                return CompletionReason.ALL_PASSED

            state.current_task_id = story.id
            logger.info("Iteration %d: story %s", iteration, story.id)
            yield StoryStarted(story=story)

            outcome, transcript = yield from self._invoke_agent(
                self._prompts.generate(story=story),
                control,
            )
            if outcome.aborted:
                yield TaskCompleted(task_id=story.id, success=False)
                return CompletionReason.STOPPED
            if not outcome.success:
                yield ErrorReported(message=_failure_message(outcome))
                yield TaskCompleted(task_id=story.id, success=False)
            else:
                story_id = yield from _resolve_story_id(document, story, transcript.plain_text())
                try:
                    update_story_status(path, story_id, passes=True)
                except DocumentError as error:
                    logger.warning("Failed to mark story %s as passing: %s", story_id, error)
                    yield ErrorReported(message=str(error))
                yield TaskCompleted(task_id=story_id, success=True)

            state.iterations_completed = iteration
            state.current_task_id = None
            yield IterationCompleted(iteration=iteration)

            if control.stop_requested:
                state.stop_after_current = True
                return CompletionReason.STOPPED
        return CompletionReason.FINISHED

    # -- agent invocation -----------------------------------------------------

    def _invoke_agent(
        self,
        prompt: str,
        control: RunControl,
    ) -> Generator[IterationEvent, None, tuple[AgentRunOutcome, StreamTranscript]]:
        transcript = StreamTranscript()
        session = self._backend.start(
            AgentRunRequest(prompt=prompt, control=control, log_file=self._log_file, cwd=self._cwd),
        )
        streamed = False
        try:
            for chunk in session.chunks():
                event = _output_event(transcript.feed(chunk), transcript)
                if event is not None:
                    yield event
            streamed = True
        finally:
            if not streamed:
                # Consumer closed the event stream mid-invocation.
                session.abort()
                session.wait()
        event = _output_event(transcript.finish(), transcript)
        if event is not None:
            yield event

        outcome = session.wait()
        if not outcome.success and control.cancelled and not outcome.aborted:
            outcome = AgentRunOutcome.failed(
                AgentFailureKind.ABORTED,
                "Agent process aborted",
                exit_code=outcome.exit_code,
            )
        elif outcome.success and transcript.reported_error():
            outcome = AgentRunOutcome.failed(
                AgentFailureKind.PROCESS_ERROR,
                "Agent reported an error result",
                exit_code=outcome.exit_code,
            )
        return outcome, transcript


def _cancelled(state: IterationRun, control: RunControl) -> bool:
    state.cancel_requested = control.cancelled
    return state.cancel_requested


def _failure_message(outcome: AgentRunOutcome) -> str:
    if outcome.failure is None:
        return "Agent process failed"
    return outcome.failure.message


def _output_event(
    decoded: list[StreamMessage],
    transcript: StreamTranscript,
) -> AgentOutput | None:
    new_messages = tuple(
        display for display in map(format_message, decoded) if display is not None
    )
    if not new_messages:
        return None
    return AgentOutput(new_messages=new_messages, view=tuple(transcript.view()))


def _resolve_story_id(
    document: BacklogDocument,
    selected: UserStory,
    plain_text: str,
) -> Generator[IterationEvent, None, str]:
    """Pick the story to mark as passing from what the agent says it did."""

    detected = detect_story_id(plain_text)
    if detected is None:
        yield StoryDetectionFailed(fallback_id=selected.id)
        return selected.id
    if not any(story.id == detected for story in document.user_stories):
        yield ErrorReported(
            message=f"Detected story {detected} not found in PRD, using {selected.id}",
        )
        return selected.id
    if detected != selected.id:
        yield StoryMismatch(expected_id=selected.id, detected_id=detected)
    return detected
