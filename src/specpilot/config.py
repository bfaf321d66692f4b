"""XDG config loading/saving."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from specpilot.autopilot.agents import AGENT_TIMEOUTS, DEFAULT_PHASE_ORDER, TASK_TRACKING_AGENTS, VALID_AGENTS
from specpilot.specs.tasks import DEFAULT_COMPLETION_KEYWORDS, CompletionHeuristic

DEFAULT_CONFIG_PATH = Path("~/.config/specpilot/config.toml").expanduser()
DEFAULT_AGENT_CLI = "claude"
DEFAULT_AGENT_ARGS = ["--print"]
DEFAULT_TERMINAL_COLS = 80
DEFAULT_TERMINAL_ROWS = 24
DEFAULT_REPLAY_LIMIT = 1000
DEFAULT_COLLECTOR_GRACE_SECONDS = 5.0
DEFAULT_SHORT_TITLE_THRESHOLD = 10
DEFAULT_CONTEXT_WINDOW = 200
AGENT_CLI_ENV = "SPECPILOT_AGENT_CLI"


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    agent_cli: str = DEFAULT_AGENT_CLI
    agent_args: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))
    default_phases: list[str] = Field(default_factory=lambda: list(DEFAULT_PHASE_ORDER))
    agent_timeouts: dict[str, int] = Field(default_factory=lambda: dict(AGENT_TIMEOUTS))
    task_tracking_agents: list[str] = Field(default_factory=lambda: sorted(TASK_TRACKING_AGENTS))
    update_spec_tasks: bool = True
    terminal_cols: int = Field(default=DEFAULT_TERMINAL_COLS, ge=20, le=1000)
    terminal_rows: int = Field(default=DEFAULT_TERMINAL_ROWS, ge=5, le=500)
    shell: str = ""
    replay_limit: int = Field(default=DEFAULT_REPLAY_LIMIT, ge=1)
    collector_grace_seconds: float = Field(default=DEFAULT_COLLECTOR_GRACE_SECONDS, ge=0)
    short_title_threshold: int = Field(default=DEFAULT_SHORT_TITLE_THRESHOLD, ge=0)
    context_window: int = Field(default=DEFAULT_CONTEXT_WINDOW, ge=0)
    completion_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_COMPLETION_KEYWORDS))

    @field_validator("default_phases", "task_tracking_agents")
    @classmethod
    def _validate_agents(cls, value: list[str]) -> list[str]:
        unknown = [item for item in value if item not in VALID_AGENTS]
        if unknown:
            raise ValueError(f"Unknown agents: {', '.join(unknown)}")
        return value

    def completion_heuristic(self) -> CompletionHeuristic:
        return CompletionHeuristic(
            min_title_length=self.short_title_threshold,
            context_window=self.context_window,
            keywords=tuple(self.completion_keywords),
        )

    def agent_command(self) -> list[str]:
        return [self.agent_cli, *self.agent_args]


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _string_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items


def _agent_list(value: object) -> list[str] | None:
    items = _string_list(value)
    if items is None:
        return None
    known = [item for item in items if item in VALID_AGENTS]
    if len(known) != len(items):
        return None
    return known


def _normalize_timeouts(value: object) -> dict[str, int]:
    timeouts = dict(AGENT_TIMEOUTS)
    if not isinstance(value, dict):
        return timeouts
    for agent, seconds in value.items():
        if agent not in VALID_AGENTS:
            continue
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            continue
        timeouts[agent] = seconds
    return timeouts


def _bounded_int(value: object, default: int, low: int, high: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    if value < low or (high is not None and value > high):
        return default
    return value


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    agent_cli = raw.get("agent_cli", cfg.agent_cli)
    if isinstance(agent_cli, str) and agent_cli.strip():
        cfg.agent_cli = agent_cli.strip()
    env_cli = os.getenv(AGENT_CLI_ENV, "").strip()
    if env_cli:
        cfg.agent_cli = env_cli

    agent_args = _string_list(raw.get("agent_args"))
    if agent_args is not None:
        cfg.agent_args = agent_args

    default_phases = _agent_list(raw.get("default_phases"))
    if default_phases:
        cfg.default_phases = default_phases

    cfg.agent_timeouts = _normalize_timeouts(raw.get("agent_timeouts", {}))

    tracking = _agent_list(raw.get("task_tracking_agents"))
    if tracking is not None:
        cfg.task_tracking_agents = tracking

    update_spec_tasks = raw.get("update_spec_tasks", cfg.update_spec_tasks)
    if isinstance(update_spec_tasks, bool):
        cfg.update_spec_tasks = update_spec_tasks

    cfg.terminal_cols = _bounded_int(raw.get("terminal_cols"), cfg.terminal_cols, 20, 1000)
    cfg.terminal_rows = _bounded_int(raw.get("terminal_rows"), cfg.terminal_rows, 5, 500)

    shell = raw.get("shell", cfg.shell)
    if isinstance(shell, str):
        cfg.shell = shell.strip()

    cfg.replay_limit = _bounded_int(raw.get("replay_limit"), cfg.replay_limit, 1)

    grace = raw.get("collector_grace_seconds", cfg.collector_grace_seconds)
    if isinstance(grace, (int, float)) and not isinstance(grace, bool) and grace >= 0:
        cfg.collector_grace_seconds = float(grace)

    cfg.short_title_threshold = _bounded_int(raw.get("short_title_threshold"), cfg.short_title_threshold, 0)
    cfg.context_window = _bounded_int(raw.get("context_window"), cfg.context_window, 0)

    keywords = _string_list(raw.get("completion_keywords"))
    if keywords:
        cfg.completion_keywords = [item.lower() for item in keywords]

    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        f"agent_cli = {_toml_scalar(config.agent_cli)}",
        f"agent_args = {_toml_scalar(config.agent_args)}",
        f"default_phases = {_toml_scalar(config.default_phases)}",
        f"task_tracking_agents = {_toml_scalar(config.task_tracking_agents)}",
        f"update_spec_tasks = {_toml_scalar(config.update_spec_tasks)}",
        f"terminal_cols = {_toml_scalar(config.terminal_cols)}",
        f"terminal_rows = {_toml_scalar(config.terminal_rows)}",
        f"shell = {_toml_scalar(config.shell)}",
        f"replay_limit = {_toml_scalar(config.replay_limit)}",
        f"collector_grace_seconds = {_toml_scalar(config.collector_grace_seconds)}",
        f"short_title_threshold = {_toml_scalar(config.short_title_threshold)}",
        f"context_window = {_toml_scalar(config.context_window)}",
        f"completion_keywords = {_toml_scalar(config.completion_keywords)}",
    ]

    if config.agent_timeouts:
        lines.append("")
        lines.append("[agent_timeouts]")
        for agent, seconds in sorted(config.agent_timeouts.items()):
            lines.append(f'"{_escape(agent)}" = {_toml_scalar(seconds)}')

    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
