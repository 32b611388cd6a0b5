from __future__ import annotations

from pathlib import Path

import allure
from conftest import make_task

from ralph_runner.loop.models import UserStory
from ralph_runner.loop.prompts import (
    ALL_TICKETS_PROMPT_TEMPLATE,
    DOCUMENT_PROMPT_TEMPLATE,
    TICKET_PROMPT_TEMPLATE,
    PromptGenerator,
    PromptSource,
    load_prompt_template,
)

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Agent Prompts"),
]


def test_prompt_file_overrides_default(tmp_path: Path) -> None:
    (tmp_path / "prompt.txt").write_text("Custom $TASK_ID", "utf-8")

    loaded = load_prompt_template(tmp_path)

    assert loaded.source == PromptSource.FILE
    assert loaded.content == "Custom $TASK_ID"
    assert loaded.path == tmp_path / "prompt.txt"


def test_missing_prompt_file_uses_default(tmp_path: Path) -> None:
    loaded = load_prompt_template(tmp_path)

    assert loaded.source == PromptSource.DEFAULT
    assert loaded.content == TICKET_PROMPT_TEMPLATE
    assert loaded.path is None


def test_undecodable_prompt_file_falls_back(tmp_path: Path) -> None:
    (tmp_path / "prompt.txt").write_bytes(b"\xff\xfe\xfa")

    loaded = load_prompt_template(tmp_path, ALL_TICKETS_PROMPT_TEMPLATE)

    assert loaded.source == PromptSource.DEFAULT
    assert loaded.content == ALL_TICKETS_PROMPT_TEMPLATE


def test_generate_fills_task_and_ticket_variables(tmp_path: Path) -> None:
    generator = PromptGenerator(
        "$TICKET_ID:$TICKET_TITLE $TASK_ID:$TASK_TITLE $PROGRESS_FILE $UNKNOWN",
        ticket_id="epic-1",
        ticket_title="Checkout",
        progress_file=tmp_path / "progress.txt",
    )

    prompt = generator.generate(make_task("T-1"))

    assert prompt == f"epic-1:Checkout T-1:Title T-1 {tmp_path / 'progress.txt'} $UNKNOWN"


def test_generate_without_task_leaves_variables_empty() -> None:
    generator = PromptGenerator("[$TASK_ID][$TICKET_ID]")

    assert generator.generate() == "[][]"


def test_generate_fills_story_variables() -> None:
    story = UserStory(
        id="US-002",
        title="Login",
        acceptance_criteria=[],
        priority=1,
        passes=False,
        notes="",
    )

    assert PromptGenerator("$STORY_ID $STORY_TITLE").generate(story=story) == "US-002 Login"


def test_generator_renders_fresh_prompt_each_call() -> None:
    generator = PromptGenerator("$TASK_ID")

    assert generator.generate(make_task("T-1")) == "T-1"
    assert generator.generate(make_task("T-2")) == "T-2"


def test_for_project_picks_default_by_mode(tmp_path: Path) -> None:
    ticket = PromptGenerator.for_project(tmp_path, ticket_id="epic-1", ticket_title="Checkout")
    everything = PromptGenerator.for_project(tmp_path)
    document = PromptGenerator.for_project(tmp_path, document=True)

    assert "working on ticket **epic-1**: Checkout" in ticket.generate(make_task("T-1"))
    assert "`bd ready`" in everything.generate()
    assert everything.generate() == ALL_TICKETS_PROMPT_TEMPLATE.replace(
        "$PROGRESS_FILE",
        str(tmp_path / "progress.txt"),
    )
    assert str(tmp_path / "prd.json") in document.generate()
    assert "<promise>COMPLETE</promise>" in DOCUMENT_PROMPT_TEMPLATE


def test_for_project_prefers_prompt_file(tmp_path: Path) -> None:
    (tmp_path / "prompt.txt").write_text("Do $TASK_ID for $TICKET_ID", "utf-8")

    generator = PromptGenerator.for_project(tmp_path, ticket_id="epic-9")

    assert generator.generate(make_task("T-3")) == "Do T-3 for epic-9"
