"""Task selection and readiness policy over in-memory tracker snapshots.

Readiness is decided from each task's own snapshot only: a ``blocked_by`` entry
that refers to a task closed after the query still counts as blocking until
the next poll. The policy never looks up blockers' status.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ralph_runner.loop.models import Task, TaskStatus, UserStory

DEFAULT_HOLD_LABEL = "hold"


@dataclass(frozen=True, slots=True)
class ProgressSummary:
    """Closed/open counts for the children of one ticket."""

    open_count: int
    closed_count: int

    @property
    def total(self) -> int:
        return self.open_count + self.closed_count

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        return round(self.closed_count * 100 / self.total)


def is_ready(task: Task) -> bool:
    return task.status != TaskStatus.CLOSED and not task.blocked_by


def is_blocked(task: Task) -> bool:
    return task.status != TaskStatus.CLOSED and bool(task.blocked_by)


def is_held(task: Task, hold_label: str = DEFAULT_HOLD_LABEL) -> bool:
    """Whether the reserved label excludes the task from automated selection."""

    wanted = hold_label.lower()
    return any(label.lower() == wanted for label in task.labels)


def without_held(tasks: Iterable[Task], hold_label: str = DEFAULT_HOLD_LABEL) -> list[Task]:
    return [task for task in tasks if not is_held(task, hold_label)]


def find_next_ready(
    tasks: Sequence[Task],
    hold_label: str = DEFAULT_HOLD_LABEL,
) -> Task | None:
    """Pick the most urgent ready task.

    Equal priorities keep the order of ``tasks`` (``sorted`` is stable), so the
    tracker's query order is the only tie-break. The tracker does not promise
    any particular order, which makes this tie-break intentionally coarse.
    """

    candidates = [task for task in tasks if is_ready(task) and not is_held(task, hold_label)]
    if not candidates:
        return None
    return sorted(candidates, key=lambda task: task.priority)[0]


def is_batch_complete(tasks: Sequence[Task]) -> bool:
    """True when no task in scope can make unattended progress.

    Every task must be closed or blocked; an empty scope is complete.
    """

    return all(not is_ready(task) for task in tasks)


def find_next_incomplete_story(stories: Sequence[UserStory]) -> UserStory | None:
    pending = [story for story in stories if not story.passes]
    if not pending:
        return None
    return sorted(pending, key=lambda story: story.priority)[0]


def summarize_progress(children: Iterable[Task]) -> ProgressSummary:
    open_count = 0
    closed_count = 0
    for child in children:
        if child.status == TaskStatus.CLOSED:
            closed_count += 1
        else:
            open_count += 1
    return ProgressSummary(open_count=open_count, closed_count=closed_count)
