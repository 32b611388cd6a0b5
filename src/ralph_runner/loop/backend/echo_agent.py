"""Deterministic stand-in for the agent CLI, used by backend integration tests.

It accepts the same flags as the real agent (unknown ones are ignored) and
writes a stream-json transcript to stdout.
"""

from __future__ import annotations

import argparse
import json
import sys
import time


def _frame(payload: dict) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def _assistant_text(text: str) -> bytes:
    return _frame(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}},
    )


def _tool_roundtrip(name: str) -> bytes:
    use = _frame(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "name": name, "input": {"command": "ls"}}],
            },
        },
    )
    result = _frame(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "content": "ok"}]},
            "tool_use_result": {"stdout": "ok", "stderr": ""},
        },
    )
    return use + result


def _write(data: bytes, *, byte_by_byte: bool) -> None:
    out = sys.stdout.buffer
    if not byte_by_byte:
        out.write(data)
        out.flush()
        return
    for index in range(len(data)):
        out.write(data[index : index + 1])
        out.flush()


def main(argv: list[str] | None = None) -> int:
    """Emit the requested transcript and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", dest="prompt", default="")
    parser.add_argument("--text", action="append", default=[])
    parser.add_argument("--tool", action="append", default=[])
    parser.add_argument("--echo-prompt", action="store_true")
    parser.add_argument("--noise", action="store_true")
    parser.add_argument("--byte-by-byte", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--result-error", action="store_true")
    parser.add_argument("--cost", type=float, default=0.01)
    args, _unknown = parser.parse_known_args(argv)

    byte_by_byte = args.byte_by_byte
    _write(_frame({"type": "system", "subtype": "init"}), byte_by_byte=byte_by_byte)
    if args.noise:
        _write(b"not json at all\n", byte_by_byte=byte_by_byte)
        _write(_frame({"type": "assistant", "version": "1.0"}), byte_by_byte=byte_by_byte)
    if args.echo_prompt:
        _write(_assistant_text(args.prompt), byte_by_byte=byte_by_byte)
    for name in args.tool:
        _write(_tool_roundtrip(name), byte_by_byte=byte_by_byte)
    for text in args.text:
        _write(_assistant_text(text), byte_by_byte=byte_by_byte)

    if args.sleep:
        time.sleep(args.sleep)

    _write(
        _frame(
            {
                "type": "result",
                "is_error": args.result_error,
                "duration_ms": 1234,
                "total_cost_usd": args.cost,
            },
        ),
        byte_by_byte=byte_by_byte,
    )
    if args.stderr:
        sys.stderr.write(args.stderr)
        sys.stderr.flush()
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
