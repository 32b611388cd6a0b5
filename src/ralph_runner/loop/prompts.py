"""Agent prompt templates and the per-iteration prompt generator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from string import Template

from ralph_runner.loop.models import Task, UserStory

logger = logging.getLogger(__name__)

PROMPT_FILE_NAME = "prompt.txt"
PRD_FILE_NAME = "prd.json"
PROGRESS_FILE_NAME = "progress.txt"

TICKET_PROMPT_TEMPLATE = """\
# Ralph Agent Instructions

## Ticket Context

You are working on ticket **$TICKET_ID**: $TICKET_TITLE

The task selected for this iteration is **$TASK_ID**: $TASK_TITLE

## Your Task

1. Read `$PROGRESS_FILE` (check Codebase Patterns first)
2. Check you're on the correct branch
3. Claim the task: `bd update $TASK_ID --status=in_progress`
4. Implement that ONE task
5. Run typecheck and tests
6. Update AGENTS.md files with learnings
7. Commit: `feat: [$TASK_ID] - $TASK_TITLE`
8. Close the task: `bd close $TASK_ID`
9. Append learnings to `$PROGRESS_FILE`

ONLY WORK ON A SINGLE TASK.

## Issue Discovery

If you discover work that needs to be done:
- Create a new issue: `bd create --title="..." --type=task --parent=$TICKET_ID`
- If the new work blocks your current task, add it as a blocker:
  `bd dep add <current-task> <new-task>`
- Continue with your current task if possible, or switch to the blocker if critical

## Progress Format

APPEND to `$PROGRESS_FILE`:

## [Date] - [Task ID]
- What was implemented
- Files changed
- **Learnings:**
  - Patterns discovered
  - Gotchas encountered
---

## Stop Condition

If ALL tasks of the ticket are closed or blocked, reply:
<promise>COMPLETE</promise>

Otherwise end normally.
"""

ALL_TICKETS_PROMPT_TEMPLATE = """\
# Ralph Agent Instructions

## Your Task

1. Read `$PROGRESS_FILE` (check Codebase Patterns first)
2. Find available work: `bd ready`
3. Pick ONE task, highest priority (lowest number) first
4. Claim the task: `bd update <task-id> --status=in_progress`
5. Implement that ONE task
6. Run typecheck and tests
7. Commit: `feat: [task-id] - [Title]`
8. Close the task: `bd close <task-id>`
9. Append learnings to `$PROGRESS_FILE`

ONLY WORK ON A SINGLE TASK.

## Stop Condition

If `bd ready` returns nothing, reply:
<promise>COMPLETE</promise>

Otherwise end normally.
"""

DOCUMENT_PROMPT_TEMPLATE = """\
# Ralph Agent Instructions

## Your Task

1. Read the backlog in `$PRD_FILE` and `$PROGRESS_FILE`
2. Implement user story **$STORY_ID**: $STORY_TITLE
3. Run typecheck and tests
4. Commit: `feat: [$STORY_ID] - $STORY_TITLE`
5. Append learnings to `$PROGRESS_FILE`

ONLY WORK ON A SINGLE STORY. Do not edit `passes` in `$PRD_FILE`; it is
updated for you.

## Stop Condition

If ALL stories pass, reply:
<promise>COMPLETE</promise>
"""


class PromptSource(str, Enum):
    FILE = "file"
    DEFAULT = "default"


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    """Loaded template text and where it came from."""

    content: str
    source: PromptSource
    path: Path | None = None


def load_prompt_template(ralph_dir: Path, default: str = TICKET_PROMPT_TEMPLATE) -> PromptTemplate:
    """Read ``<ralph_dir>/prompt.txt``; unreadable or missing files give ``default``."""

    path = ralph_dir / PROMPT_FILE_NAME
    if path.is_file():
        try:
            return PromptTemplate(
                content=path.read_text("utf-8"),
                source=PromptSource.FILE,
                path=path,
            )
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Cannot read prompt file %s, using default: %s", path, error)
    return PromptTemplate(content=default, source=PromptSource.DEFAULT)


class PromptGenerator:
    """Render one fresh prompt per agent invocation."""

    def __init__(
        self,
        template: str,
        *,
        ticket_id: str | None = None,
        ticket_title: str | None = None,
        prd_file: Path | None = None,
        progress_file: Path | None = None,
    ) -> None:
        self._template = Template(template)
        self._base = {
            "TICKET_ID": ticket_id or "",
            "TICKET_TITLE": ticket_title or "",
            "PRD_FILE": str(prd_file or ""),
            "PROGRESS_FILE": str(progress_file or ""),
        }

    @classmethod
    def for_project(
        cls,
        ralph_dir: Path,
        *,
        ticket_id: str | None = None,
        ticket_title: str | None = None,
        document: bool = False,
    ) -> PromptGenerator:
        """Build a generator from the project's prompt file or the matching default."""

        if document:
            default = DOCUMENT_PROMPT_TEMPLATE
        elif ticket_id is None:
            default = ALL_TICKETS_PROMPT_TEMPLATE
        else:
            default = TICKET_PROMPT_TEMPLATE
        loaded = load_prompt_template(ralph_dir, default)
        return cls(
            loaded.content,
            ticket_id=ticket_id,
            ticket_title=ticket_title,
            prd_file=ralph_dir / PRD_FILE_NAME,
            progress_file=ralph_dir / PROGRESS_FILE_NAME,
        )

    def generate(self, task: Task | None = None, story: UserStory | None = None) -> str:
        values = dict(self._base)
        values["TASK_ID"] = task.id if task else ""
        values["TASK_TITLE"] = task.title if task else ""
        values["STORY_ID"] = story.id if story else ""
        values["STORY_TITLE"] = story.title if story else ""
        return self._template.safe_substitute(values)
