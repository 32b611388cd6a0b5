"""Incremental decoder for the agent's newline-delimited JSON stream.

The agent writes one JSON object per line on stdout. Reads from the pipe make
no promise about where line boundaries fall, so the decoder keeps the trailing
partial line in an explicit :class:`DecoderState` value that the caller threads
from one chunk to the next. Decoding progressively and decoding the
concatenated text once yield the same message sequence.

The protocol is noisy by construction: tool output (a file read, a command's
stdout) can itself be a shallow JSON object with a ``type`` key. A frame is
accepted only when it has the minimal shape of its declared kind; anything
else is dropped without raising.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ralph_runner.loop.models import (
    AssistantMessage,
    ResultMessage,
    StreamMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)


@dataclass(frozen=True, slots=True)
class DecoderState:
    """Partial line carried over from the previous chunk."""

    pending: str = ""


def decode_chunk(state: DecoderState, chunk: str) -> tuple[DecoderState, list[StreamMessage]]:
    """Decode every complete line in ``state.pending + chunk``."""

    lines = (state.pending + chunk).split("\n")
    pending = lines.pop()
    messages = [message for message in map(parse_line, lines) if message is not None]
    return DecoderState(pending=pending), messages


def decode_final(state: DecoderState) -> list[StreamMessage]:
    """Decode the unterminated last line left when the stream closes."""

    message = parse_line(state.pending)
    return [] if message is None else [message]


def decode_text(text: str) -> list[StreamMessage]:
    """Decode a complete transcript in one pass."""

    state, messages = decode_chunk(DecoderState(), text)
    return messages + decode_final(state)


def parse_line(line: str) -> StreamMessage | None:
    """Parse one protocol line; ``None`` for blanks, bad JSON and wrong shapes."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except (ValueError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if not isinstance(kind, str):
        return None
    parser = _FRAME_PARSERS.get(kind)
    if parser is None:
        return None
    return parser(payload)


def _message_content(payload: dict[str, Any]) -> list[Any] | None:
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    return content


def _parse_assistant(payload: dict[str, Any]) -> AssistantMessage | None:
    content = _message_content(payload)
    if content is None:
        return None

    blocks: list[TextBlock | ToolUseBlock] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        block_type = item.get("type")
        if block_type == "text" and isinstance(item.get("text"), str):
            blocks.append(TextBlock(text=item["text"]))
        elif block_type == "tool_use" and isinstance(item.get("name"), str):
            tool_input = item.get("input")
            blocks.append(
                ToolUseBlock(
                    name=item["name"],
                    input=tool_input if isinstance(tool_input, dict) else {},
                ),
            )
    return AssistantMessage(blocks=tuple(blocks))


def _parse_user(payload: dict[str, Any]) -> UserMessage | None:
    content = _message_content(payload)
    if content is None:
        return None

    blocks: list[ToolResultBlock] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "tool_result":
            continue
        blocks.append(
            ToolResultBlock(
                content=_tool_result_text(item.get("content")),
                is_error=item.get("is_error") is True,
            ),
        )

    raw_tool_output = payload.get("tool_use_result")
    if not isinstance(raw_tool_output, dict | str):
        raw_tool_output = None
    return UserMessage(blocks=tuple(blocks), raw_tool_output=raw_tool_output)


def _tool_result_text(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


def _parse_system(_: dict[str, Any]) -> SystemMessage:
    return SystemMessage()


def _parse_result(payload: dict[str, Any]) -> ResultMessage:
    cost = payload.get("cost_usd")
    if cost is None:
        cost = payload.get("total_cost_usd")
    return ResultMessage(
        is_error=payload.get("is_error") is True,
        duration_ms=_optional_int(payload.get("duration_ms")),
        cost_usd=_optional_float(cost),
    )


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


_FRAME_PARSERS: dict[str, Callable[[dict[str, Any]], StreamMessage | None]] = {
    "assistant": _parse_assistant,
    "user": _parse_user,
    "system": _parse_system,
    "result": _parse_result,
}
