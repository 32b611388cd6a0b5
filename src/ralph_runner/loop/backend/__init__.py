"""Agent backend implementations."""

from ralph_runner.loop.backend.base import AgentBackend, AgentRunRequest, AgentSession
from ralph_runner.loop.backend.cli_backend import ClaudeCliBackend, CliAgentSession

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentSession",
    "ClaudeCliBackend",
    "CliAgentSession",
]
