"""Human-facing projection of decoded stream frames."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from typing import Any

from ralph_runner.loop.models import (
    AssistantMessage,
    DisplayMessage,
    DisplaySource,
    ResultMessage,
    StreamMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from ralph_runner.loop.protocol import DecoderState, decode_chunk, decode_final

MAX_CONTENT_LENGTH = 200
MAX_TOOL_VALUE_LENGTH = 50
TRUNCATION_MARKER = "... [truncated]"
DEFAULT_COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"

SUCCESS_GLYPH = "✓"
FAILURE_GLYPH = "✗"

_LINE_BREAKS_RE = re.compile(r"[\r\n\t]+")


def single_line(text: str) -> str:
    """Collapse line breaks and tabs so the text renders on one line."""

    return _LINE_BREAKS_RE.sub(" ", text)


def truncate(text: str, max_length: int = MAX_CONTENT_LENGTH) -> str:
    text = single_line(text)
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_MARKER


def summarize_tool_input(tool_input: dict[str, Any]) -> str:
    """Render tool arguments as ``key: value`` pairs without dumping large values."""

    if not tool_input:
        return "{}"

    parts: list[str] = []
    for key, value in tool_input.items():
        if isinstance(value, str):
            rendered = truncate(value, MAX_TOOL_VALUE_LENGTH)
        elif isinstance(value, list):
            rendered = f"[{len(value)} items]"
        elif isinstance(value, dict):
            rendered = "{...}"
        else:
            rendered = json.dumps(value)
        parts.append(f"{key}: {rendered}")
    return ", ".join(parts)


def format_tool_use(block: ToolUseBlock) -> str:
    return f"[{block.name}] {truncate(summarize_tool_input(block.input))}"


def format_tool_result(
    block: ToolResultBlock,
    raw_tool_output: dict[str, Any] | str | None = None,
) -> str:
    """Glyph plus output; non-empty stderr always means failure."""

    content = block.content
    is_error = block.is_error

    if isinstance(raw_tool_output, dict):
        if raw_tool_output.get("is_error") is True:
            is_error = True
        stderr = raw_tool_output.get("stderr")
        stdout = raw_tool_output.get("stdout")
        if isinstance(stderr, str) and stderr.strip():
            content = stderr
            is_error = True
        elif isinstance(stdout, str) and stdout:
            content = stdout
    elif isinstance(raw_tool_output, str) and raw_tool_output.startswith("Error:"):
        content = raw_tool_output
        is_error = True

    glyph = FAILURE_GLYPH if is_error else SUCCESS_GLYPH
    if not content.strip():
        return glyph
    return f"{glyph} {truncate(content)}"


def format_result(message: ResultMessage) -> str:
    parts = [f"━━━ {'Error' if message.is_error else 'Completed'}"]
    if message.duration_ms is not None:
        parts.append(f"in {message.duration_ms // 1000}s")
    if message.cost_usd is not None:
        parts.append(f"(${math.floor(message.cost_usd * 100) / 100:.2f})")
    parts.append("━━━")
    return " ".join(parts)


def format_message(message: StreamMessage) -> DisplayMessage | None:
    """Format one frame; ``None`` when it has nothing worth showing."""

    if isinstance(message, AssistantMessage):
        parts = [
            single_line(block.text).strip()
            if isinstance(block, TextBlock)
            else format_tool_use(block)
            for block in message.blocks
        ]
        content = " ".join(part for part in parts if part)
        return DisplayMessage(DisplaySource.ASSISTANT, content) if content else None

    if isinstance(message, UserMessage):
        content = " ".join(
            format_tool_result(block, message.raw_tool_output) for block in message.blocks
        )
        return DisplayMessage(DisplaySource.USER, content) if content else None

    if isinstance(message, ResultMessage):
        return DisplayMessage(DisplaySource.RESULT, format_result(message))

    return None


def filter_for_display(messages: Sequence[StreamMessage]) -> list[DisplayMessage]:
    """Keep every agent turn and result, plus only the tool activity after the last turn.

    Frames that format to nothing (system frames, empty turns) are dropped
    before the last-assistant index is taken.
    """

    formatted = [
        display for display in map(format_message, messages) if display is not None
    ]
    last_assistant = -1
    for index in range(len(formatted) - 1, -1, -1):
        if formatted[index].source == DisplaySource.ASSISTANT:
            last_assistant = index
            break
    if last_assistant == -1:
        return formatted

    return [
        display
        for index, display in enumerate(formatted)
        if display.source in (DisplaySource.ASSISTANT, DisplaySource.RESULT)
        or index > last_assistant
    ]


def extract_plain_text(messages: Sequence[StreamMessage]) -> str:
    """Plain narrative of assistant turns, without markup or tool results."""

    chunks: list[str] = []
    for message in messages:
        if not isinstance(message, AssistantMessage):
            continue
        parts: list[str] = []
        for block in message.blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            else:
                parts.append(f"\n[Tool: {block.name}]\n")
        if parts:
            chunks.append("".join(parts))
    return "\n".join(chunks)


def contains_completion_sentinel(
    text: str,
    sentinel: str = DEFAULT_COMPLETION_SENTINEL,
) -> bool:
    return sentinel in text


class StreamTranscript:
    """Decoded view of one agent invocation, fed chunk by chunk."""

    def __init__(self) -> None:
        self._state = DecoderState()
        self._messages: list[StreamMessage] = []
        self._finished = False

    @property
    def messages(self) -> tuple[StreamMessage, ...]:
        return tuple(self._messages)

    def feed(self, chunk: str) -> list[StreamMessage]:
        """Decode one chunk and return the frames it completed."""

        if self._finished:
            raise RuntimeError("Transcript already finished.")
        self._state, decoded = decode_chunk(self._state, chunk)
        self._messages.extend(decoded)
        return decoded

    def finish(self) -> list[StreamMessage]:
        """Flush the trailing partial line once the stream has closed."""

        if self._finished:
            return []
        self._finished = True
        decoded = decode_final(self._state)
        self._state = DecoderState()
        self._messages.extend(decoded)
        return decoded

    def view(self) -> list[DisplayMessage]:
        return filter_for_display(self._messages)

    def plain_text(self) -> str:
        return extract_plain_text(self._messages)

    def reported_error(self) -> bool:
        """Whether the agent emitted a result frame flagged as an error."""

        return any(
            isinstance(message, ResultMessage) and message.is_error
            for message in self._messages
        )
