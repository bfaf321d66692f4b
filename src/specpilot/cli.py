"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging as py_logging
import shlex
import sys
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

from .autopilot.agents import VALID_AGENTS, load_agent_definition, phase_catalog
from .autopilot.models import RunSnapshot, RunStatus
from .autopilot.orchestrator import PhaseOrchestrator
from .autopilot.reporter import RunReporter
from .autopilot.transport import AgentTransport, DirectCaptureTransport, TerminalTransport
from .config import AppConfig, load_config
from .errors import ExitCode, SpecPilotError, user_facing_error
from .logging import configure_logging, default_log_path
from .terminal.models import SessionEvent, SessionEventKind
from .terminal.pty_backend import PtyBackend
from .terminal.registry import SessionRegistry

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_VALID_MODES = ("direct", "terminal")
TERMINAL_SESSION_ID = "autopilot"


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _phases_type(value: str) -> list[str]:
    phases = [item.strip() for item in value.split(",") if item.strip()]
    if not phases:
        raise argparse.ArgumentTypeError("--phases must list at least one agent")
    unknown = [item for item in phases if item not in VALID_AGENTS]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"Unknown agent: {', '.join(unknown)}. Valid agents: {', '.join(VALID_AGENTS)}"
        )
    return phases


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="specpilot")
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: ~/.config/specpilot/config.toml)")
    commands = parser.add_subparsers(dest="command", required=True)

    autopilot = commands.add_parser("autopilot", help="Run agent phases against a spec file")
    autopilot.add_argument("spec_file", type=Path)
    autopilot.add_argument("--phases", type=_phases_type, default=None, help="Comma-separated agent ids to run")
    autopilot.add_argument("--project", type=Path, default=None, help="Project directory (default: current directory)")
    autopilot.add_argument(
        "--no-update",
        dest="update",
        action="store_false",
        help="Do not check off completed tasks in the spec file",
    )
    autopilot.add_argument("--verbose", action="store_true", help="Show agent output and missing definitions")
    autopilot.add_argument("--mode", choices=_VALID_MODES, default="direct")
    autopilot.add_argument("--agent-cli", default=None, help="Agent executable (overrides config)")

    commands.add_parser("phases", help="List the available agent phases")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def resolve_agent_command(namespace: argparse.Namespace, config: AppConfig) -> list[str]:
    if namespace.agent_cli:
        return [*shlex.split(namespace.agent_cli), *config.agent_args]
    return config.agent_command()


def _read_spec(spec_file: Path) -> tuple[Path, str]:
    spec_path = spec_file.expanduser().resolve()
    if not spec_path.is_file():
        raise SpecPilotError(
            f"Spec file not found: {spec_path}",
            code=ExitCode.NOT_FOUND,
            hint="Pass the path of an existing markdown spec.",
        )
    try:
        text = spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise SpecPilotError(
            f"Spec file is unreadable: {spec_path}",
            code=ExitCode.RUNTIME_ERROR,
            hint=str(exc),
        ) from exc
    if not text.strip():
        raise SpecPilotError(
            "Spec file is empty",
            code=ExitCode.VALIDATION_ERROR,
            hint="Write the requirements into the spec before running autopilot.",
        )
    return spec_path, text


def _resolve_project(project: Path | None) -> Path:
    project_path = (project or Path.cwd()).expanduser().resolve()
    if not project_path.is_dir():
        raise SpecPilotError(
            f"Project path not found: {project_path}",
            code=ExitCode.NOT_FOUND,
            hint="Pass an existing directory with --project.",
        )
    return project_path


def _mirror(stream: TextIO) -> Callable[[str], None]:
    def write(text: str) -> None:
        stream.write(text)
        stream.flush()

    return write


async def _run_phases(
    namespace: argparse.Namespace,
    config: AppConfig,
    *,
    spec_path: Path,
    spec_text: str,
    project_path: Path,
    phases: list[str],
    reporter: RunReporter,
    transport: AgentTransport | None,
    stdout: TextIO,
) -> RunSnapshot:
    logger = py_logging.getLogger("specpilot.cli")
    registry: SessionRegistry | None = None
    agent_command = resolve_agent_command(namespace, config)
    echo = _mirror(stdout)

    if transport is None and namespace.mode == "terminal":
        registry = SessionRegistry(PtyBackend(shell=config.shell), replay_limit=config.replay_limit)
        registry.create_session(TERMINAL_SESSION_ID, project_path, config.terminal_cols, config.terminal_rows)

        def mirror_session(event: SessionEvent) -> None:
            if event.kind == SessionEventKind.DATA:
                echo(event.data)

        registry.subscribe(TERMINAL_SESSION_ID, mirror_session)
        transport = TerminalTransport(
            registry,
            TERMINAL_SESSION_ID,
            agent_command=agent_command,
            grace_seconds=config.collector_grace_seconds,
        )
    elif transport is None:
        transport = DirectCaptureTransport(agent_command, on_output=echo if namespace.verbose else None)
    logger.debug("Autopilot transport mode=%s command=%s", namespace.mode, agent_command)

    def definition_loader(project: Path, agent: str) -> str | None:
        definition = load_agent_definition(project, agent)
        if definition is None:
            reporter.note(f"agent definition not found at {project}/.claude/commands/agents/{agent}.md")
        return definition

    orchestrator = PhaseOrchestrator(
        transport,
        catalog=phase_catalog(config.agent_timeouts),
        definition_loader=definition_loader,
        update_tasks=namespace.update and config.update_spec_tasks,
        task_tracking_agents=config.task_tracking_agents,
        heuristic=config.completion_heuristic(),
    )
    orchestrator.subscribe(reporter)
    try:
        return await orchestrator.start(phases, spec_text, spec_path, project_path)
    finally:
        if registry is not None:
            registry.close_all()


def run_autopilot(
    namespace: argparse.Namespace,
    config: AppConfig,
    *,
    transport: AgentTransport | None = None,
    stdout: TextIO | None = None,
) -> int:
    output = stdout or sys.stdout
    spec_path, spec_text = _read_spec(namespace.spec_file)
    project_path = _resolve_project(namespace.project)
    phases = namespace.phases or list(config.default_phases)

    reporter = RunReporter(output, verbose=namespace.verbose)
    reporter.header(spec_path, project_path, len(phases))
    started = time.monotonic()
    snapshot = asyncio.run(
        _run_phases(
            namespace,
            config,
            spec_path=spec_path,
            spec_text=spec_text,
            project_path=project_path,
            phases=phases,
            reporter=reporter,
            transport=transport,
            stdout=output,
        )
    )
    reporter.summary(snapshot, time.monotonic() - started)
    if snapshot.status != RunStatus.COMPLETED:
        return int(ExitCode.PHASE_FAILED)
    return int(ExitCode.SUCCESS)


def list_phases(config: AppConfig, *, stdout: TextIO | None = None) -> int:
    output = stdout or sys.stdout
    for agent, phase in phase_catalog(config.agent_timeouts).items():
        tracked = " (tracks tasks)" if agent in config.task_tracking_agents else ""
        print(f"{agent:<16} {phase.name:<15} {phase.timeout_seconds}s{tracked}", file=output)
    return int(ExitCode.SUCCESS)


def main(
    argv: Sequence[str] | None = None,
    *,
    transport: AgentTransport | None = None,
    stdout: TextIO | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        config = load_config(namespace.config)
        if namespace.command == "phases":
            return list_phases(config, stdout=stdout)
        logger.debug("Starting autopilot spec=%s mode=%s", namespace.spec_file, namespace.mode)
        return run_autopilot(namespace, config, transport=transport, stdout=stdout)
    except SpecPilotError as exc:
        logger.error(
            "Handled SpecPilotError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except KeyboardInterrupt:
        logger.warning("Autopilot interrupted by user")
        print(user_facing_error("Run interrupted"), file=sys.stderr)
        return int(ExitCode.PHASE_FAILED)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
