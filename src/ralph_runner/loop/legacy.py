"""Legacy single-document backlog (``prd.json``) contract."""

from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from typing import Any

from ralph_runner.loop.models import BacklogDocument, UserStory

_COMMIT_STORY_RE = re.compile(r"feat:\s*\[?(US-\d{3})\]?", re.IGNORECASE)
_STORY_MENTION_RE = re.compile(r"US-\d{3}", re.IGNORECASE)


class DocumentErrorKind(str, Enum):
    FILE_NOT_FOUND = "file_not_found"
    INVALID_JSON = "invalid_json"
    INVALID_STRUCTURE = "invalid_structure"
    WRITE_FAILED = "write_failed"
    STORY_NOT_FOUND = "story_not_found"
    READ_FAILED = "read_failed"


class DocumentError(RuntimeError):
    """Backlog document could not be read, validated or written."""

    def __init__(self, message: str, *, kind: DocumentErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


def read_document(path: Path) -> BacklogDocument:
    """Load and validate the backlog document."""

    return _to_document(_load_raw(path))


def write_document(path: Path, document: BacklogDocument) -> None:
    write_raw(path, _to_raw(document))


def write_raw(path: Path, raw: dict[str, Any]) -> None:
    """Write pretty-printed JSON (tab indent, trailing newline)."""

    try:
        path.write_text(json.dumps(raw, indent="\t", ensure_ascii=False) + "\n", "utf-8")
    except OSError as error:
        raise DocumentError(
            f"Failed to write PRD file: {error}",
            kind=DocumentErrorKind.WRITE_FAILED,
        ) from error


def update_story_status(
    path: Path,
    story_id: str,
    *,
    passes: bool | None = None,
    notes: str | None = None,
) -> None:
    """Re-read the document, update one story and write it back.

    Fields the validator does not know about are preserved.
    """

    try:
        raw = _load_raw(path)
        _to_document(raw)
    except DocumentError as error:
        raise DocumentError(str(error), kind=DocumentErrorKind.READ_FAILED) from error

    for story in raw["userStories"]:
        if story["id"] == story_id:
            break
    else:
        raise DocumentError(
            f'Story with ID "{story_id}" not found in PRD',
            kind=DocumentErrorKind.STORY_NOT_FOUND,
        )

    if passes is not None:
        story["passes"] = passes
    if notes is not None:
        story["notes"] = notes
    write_raw(path, raw)


def detect_story_id(output: str) -> str | None:
    """Story id the agent worked on, judged from its narrative.

    The last ``feat: [US-NNN]`` commit mention wins; otherwise the last bare
    ``US-NNN`` mention.
    """

    commits = _COMMIT_STORY_RE.findall(output)
    if commits:
        return commits[-1].upper()
    mentions = _STORY_MENTION_RE.findall(output)
    if mentions:
        return mentions[-1].upper()
    return None


def _load_raw(path: Path) -> Any:
    try:
        content = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise DocumentError(
            f"PRD file not found: {path}",
            kind=DocumentErrorKind.FILE_NOT_FOUND,
        ) from error
    except OSError as error:
        raise DocumentError(
            f"Could not read PRD file: {error}",
            kind=DocumentErrorKind.FILE_NOT_FOUND,
        ) from error

    try:
        return json.loads(content)
    except ValueError as error:
        raise DocumentError(
            "PRD file contains invalid JSON",
            kind=DocumentErrorKind.INVALID_JSON,
        ) from error


def _to_document(raw: Any) -> BacklogDocument:
    if (
        not isinstance(raw, dict)
        or not isinstance(raw.get("branchName"), str)
        or not isinstance(raw.get("userStories"), list)
        or not all(_is_valid_story(story) for story in raw["userStories"])
    ):
        raise DocumentError(
            "PRD file structure is invalid. "
            "Expected branchName (string) and userStories (array)",
            kind=DocumentErrorKind.INVALID_STRUCTURE,
        )
    return BacklogDocument(
        branch_name=raw["branchName"],
        user_stories=[
            UserStory(
                id=story["id"],
                title=story["title"],
                acceptance_criteria=list(story["acceptanceCriteria"]),
                priority=story["priority"],
                passes=story["passes"],
                notes=story["notes"],
            )
            for story in raw["userStories"]
        ],
    )


def _is_valid_story(story: Any) -> bool:
    return (
        isinstance(story, dict)
        and isinstance(story.get("id"), str)
        and isinstance(story.get("title"), str)
        and isinstance(story.get("acceptanceCriteria"), list)
        and all(isinstance(item, str) for item in story["acceptanceCriteria"])
        and isinstance(story.get("priority"), int | float)
        and not isinstance(story.get("priority"), bool)
        and isinstance(story.get("passes"), bool)
        and isinstance(story.get("notes"), str)
    )


def _to_raw(document: BacklogDocument) -> dict[str, Any]:
    return {
        "branchName": document.branch_name,
        "userStories": [
            {
                "id": story.id,
                "title": story.title,
                "acceptanceCriteria": list(story.acceptance_criteria),
                "priority": story.priority,
                "passes": story.passes,
                "notes": story.notes,
            }
            for story in document.user_stories
        ],
    }
