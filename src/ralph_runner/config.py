"""Runtime configuration for the iteration runner."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from ralph_runner.loop.display import DEFAULT_COMPLETION_SENTINEL
from ralph_runner.loop.selection import DEFAULT_HOLD_LABEL


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    command: str = "claude"
    extra_args: tuple[str, ...] = ()
    kill_grace_seconds: float = 2.0


@dataclass(slots=True)
class TrackerSettings:
    """Issue tracker (``bd``) settings."""

    bd_command: str = "bd"
    beads_dir: Path = Path(".beads")
    hold_label: str = DEFAULT_HOLD_LABEL


@dataclass(slots=True)
class RunSettings:
    """Iteration loop settings."""

    ralph_dir: Path = Path(".ralph")
    completion_sentinel: str = DEFAULT_COMPLETION_SENTINEL
    auto_close: bool = True
    log_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    run: RunSettings = field(default_factory=RunSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``RALPH_*`` environment variables."""

        log_file = os.getenv("RALPH_LOG_FILE", "").strip()
        return cls(
            agent=AgentSettings(
                command=os.getenv("RALPH_AGENT_COMMAND", "claude"),
                extra_args=tuple(shlex.split(os.getenv("RALPH_AGENT_ARGS", ""))),
                kill_grace_seconds=_env_float("RALPH_AGENT_KILL_GRACE_SECONDS", 2.0),
            ),
            tracker=TrackerSettings(
                bd_command=os.getenv("RALPH_BD_COMMAND", "bd"),
                beads_dir=Path(os.getenv("RALPH_BEADS_DIR", ".beads")),
                hold_label=os.getenv("RALPH_HOLD_LABEL", DEFAULT_HOLD_LABEL),
            ),
            run=RunSettings(
                ralph_dir=Path(os.getenv("RALPH_DIR", ".ralph")),
                completion_sentinel=os.getenv(
                    "RALPH_COMPLETION_SENTINEL",
                    DEFAULT_COMPLETION_SENTINEL,
                ),
                auto_close=_env_bool("RALPH_AUTO_CLOSE", default=True),
                log_file=Path(log_file) if log_file else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runner cannot work with."""

        if not self.agent.command.strip():
            raise ValueError("RALPH_AGENT_COMMAND must not be empty.")
        if self.agent.kill_grace_seconds <= 0:
            raise ValueError("RALPH_AGENT_KILL_GRACE_SECONDS must be > 0.")
        if not self.tracker.bd_command.strip():
            raise ValueError("RALPH_BD_COMMAND must not be empty.")
        if not self.tracker.hold_label.strip():
            raise ValueError("RALPH_HOLD_LABEL must not be empty.")
        if not self.run.completion_sentinel:
            raise ValueError("RALPH_COMPLETION_SENTINEL must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
