"""Issue-tracker client for the ``bd`` (beads) command line."""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

from ralph_runner.loop.models import Task, TaskStatus, TaskType, TrackerErrorCode
from ralph_runner.loop.selection import DEFAULT_HOLD_LABEL, summarize_progress, without_held

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 100


class TrackerError(RuntimeError):
    """Tracker query failure with a machine-readable code."""

    def __init__(
        self,
        message: str,
        *,
        code: TrackerErrorCode,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.stderr = stderr


class Tracker(Protocol):
    """Tracker operations consumed by the iteration loop."""

    def list_ready(self, parent: str | None = None) -> list[Task]:
        """Unblocked, not-closed tasks, optionally limited to one parent."""

    def list_children(self, parent: str) -> list[Task]:
        """All direct children of a ticket, closed ones included."""

    def list_open(self) -> list[Task]:
        """Every open or in-progress ticket."""

    def add_comment(self, task_id: str, text: str) -> None:
        """Append a comment to a task."""

    def close(self, task_id: str) -> None:
        """Close a task."""


@dataclass(frozen=True, slots=True)
class TicketSummary:
    """Listing row for the ticket selector."""

    id: str
    title: str
    type: TaskType
    progress: int
    open_count: int
    closed_count: int
    has_blocked_tasks: bool


def task_from_record(record: dict[str, Any]) -> Task:
    """Convert one ``bd --json`` record into a :class:`Task`.

    ``blocked_by`` wins when present; otherwise blockers come from
    ``dependencies`` entries of type ``blocks``.
    """

    blocked_by = record.get("blocked_by")
    if not isinstance(blocked_by, list):
        dependencies = record.get("dependencies") or []
        blocked_by = [
            dependency["id"]
            for dependency in dependencies
            if isinstance(dependency, dict)
            and dependency.get("dependency_type") == "blocks"
            and isinstance(dependency.get("id"), str)
        ]
    labels = record.get("labels") or []
    return Task(
        id=str(record["id"]),
        title=str(record.get("title") or ""),
        type=_enum_value(TaskType, record.get("issue_type"), TaskType.TASK),
        status=_enum_value(TaskStatus, record.get("status"), TaskStatus.OPEN),
        priority=_priority(record.get("priority")),
        blocked_by=tuple(str(item) for item in blocked_by),
        parent=_optional_str(record.get("parent")),
        labels=tuple(str(label) for label in labels),
        description=str(record.get("description") or ""),
    )


class BeadsTracker:
    """Runs ``bd`` subcommands with ``--json`` and parses their output."""

    def __init__(
        self,
        *,
        bd_command: str = "bd",
        beads_dir: Path = Path(".beads"),
        cwd: Path | None = None,
        hold_label: str = DEFAULT_HOLD_LABEL,
    ) -> None:
        self.bd_command = bd_command
        self.beads_dir = beads_dir
        self.cwd = cwd
        self.hold_label = hold_label

    def list_ready(self, parent: str | None = None) -> list[Task]:
        args = ["ready"]
        if parent:
            args.append(f"--parent={parent}")
        args.append("--limit=0")
        return self._query_tasks(args)

    def list_children(self, parent: str) -> list[Task]:
        return self._query_tasks(["list", f"--parent={parent}", "--all", "--limit=0"])

    def list_open(self) -> list[Task]:
        open_tasks = self._query_tasks(["list", "--status=open", "--limit=0"])
        in_progress = self._query_tasks(["list", "--status=in_progress", "--limit=0"])
        return without_held([*open_tasks, *in_progress], self.hold_label)

    def list_blocked(self, parent: str | None = None) -> list[Task]:
        args = ["blocked"]
        if parent:
            args.append(f"--parent={parent}")
        return self._query_tasks(args)

    def show(self, task_id: str) -> Task | None:
        """One task with ``blocks`` filled from its reverse references."""

        tasks = self._query_tasks(["show", task_id])
        if not tasks:
            return None
        try:
            blocks = self._dependents(task_id)
        except TrackerError as error:
            logger.warning("Could not load references of %s: %s", task_id, error)
            return tasks[0]
        return replace(tasks[0], blocks=blocks)

    def _dependents(self, task_id: str) -> tuple[str, ...]:
        payload = self._run(["show", task_id, "--refs"])
        if not isinstance(payload, list):
            return ()
        # First record is the task itself.
        return tuple(
            str(record["id"])
            for record in payload[1:]
            if isinstance(record, dict)
            and "id" in record
            and any(
                isinstance(dependency, dict) and dependency.get("id") == task_id
                for dependency in record.get("dependencies") or []
            )
        )

    def list_external_blockers(self, parent: str) -> list[Task]:
        """Tasks outside the ticket that block tasks inside it."""

        blocked = self.list_blocked(parent)
        internal_ids = {task.id for task in self.list_children(parent)}
        internal_ids.add(parent)

        external_ids: list[str] = []
        for task in blocked:
            for blocker_id in task.blocked_by:
                if blocker_id not in internal_ids and blocker_id not in external_ids:
                    external_ids.append(blocker_id)

        blockers: list[Task] = []
        for blocker_id in external_ids:
            try:
                blocker = self.show(blocker_id)
            except TrackerError as error:
                logger.warning("Could not load blocker %s: %s", blocker_id, error)
                continue
            if blocker is not None:
                blockers.append(blocker)
        return blockers

    def list_tickets(self) -> list[TicketSummary]:
        summaries: list[TicketSummary] = []
        for ticket in self.list_open():
            children = self.list_children(ticket.id)
            blocked = self.list_blocked(ticket.id)
            progress = summarize_progress(children)
            summaries.append(
                TicketSummary(
                    id=ticket.id,
                    title=ticket.title,
                    type=ticket.type,
                    progress=progress.percent,
                    open_count=progress.open_count,
                    closed_count=progress.closed_count,
                    has_blocked_tasks=bool(blocked),
                ),
            )
        return summaries

    def add_comment(self, task_id: str, text: str) -> None:
        self._run(["comments", "add", task_id, text])

    def close(self, task_id: str) -> None:
        self._run(["close", task_id])

    def _query_tasks(self, args: Sequence[str]) -> list[Task]:
        payload = self._run(args)
        if not isinstance(payload, list):
            payload = [payload]
        try:
            return [task_from_record(record) for record in payload if isinstance(record, dict)]
        except (KeyError, TypeError, ValueError) as error:
            raise TrackerError(
                f"Unexpected bd record shape: {error}",
                code=TrackerErrorCode.PARSE_FAILED,
            ) from error

    def _run(self, args: Sequence[str]) -> Any:
        beads_dir = self.beads_dir if self.cwd is None else self.cwd / self.beads_dir
        if not beads_dir.exists():
            raise TrackerError(
                'Beads is not initialized. Run "bd init" first.',
                code=TrackerErrorCode.NOT_INITIALIZED,
            )

        command = [self.bd_command, *args, "--json"]
        logger.debug("Running tracker command: %s", command)
        try:
            result = subprocess.run(  # noqa: S603
                command,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise TrackerError(
                f"Failed to spawn bd process: {error}",
                code=TrackerErrorCode.COMMAND_FAILED,
            ) from error

        if result.returncode != 0:
            raise TrackerError(
                result.stderr.strip() or f"bd command exited with code {result.returncode}",
                code=TrackerErrorCode.COMMAND_FAILED,
                stderr=result.stderr,
            )

        stdout = result.stdout.strip()
        if stdout in {"", "[]"}:
            return []
        try:
            return json.loads(stdout)
        except ValueError as error:
            raise TrackerError(
                f"Failed to parse bd output as JSON: {stdout[:_PREVIEW_CHARS]}",
                code=TrackerErrorCode.PARSE_FAILED,
            ) from error


def _enum_value(enum_type, value: object, default):
    try:
        return enum_type(value)
    except ValueError:
        return default


def _priority(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("Pp").isdigit():
        return int(value.strip().lstrip("Pp"))
    return 0


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
