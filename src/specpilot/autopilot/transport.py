"""Agent invocation transports: headless subprocess or injected terminal command."""

from __future__ import annotations

import asyncio
import codecs
import logging as py_logging
import os
import re
import shlex
import tempfile
from collections.abc import Callable, Sequence
from contextlib import suppress
from pathlib import Path
from typing import Protocol

from specpilot.autopilot.models import InvocationRequest, InvocationResult
from specpilot.errors import ExitCode, SpecPilotError
from specpilot.terminal.collector import completion_command
from specpilot.terminal.models import CollectorResult
from specpilot.terminal.registry import SessionRegistry

logger = py_logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = ("claude", "--print")
DEFAULT_GRACE_SECONDS = 5.0
ERROR_TRUNCATION_LIMIT = 1200
_READ_SIZE = 4096
_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]+$")

OutputSink = Callable[[str], None]


class AgentTransport(Protocol):
    async def invoke(self, request: InvocationRequest) -> InvocationResult: ...


def _exit_error(agent: str, exit_code: int, detail: str = "") -> SpecPilotError:
    hint = detail.strip()[-ERROR_TRUNCATION_LIMIT:]
    return SpecPilotError(
        f"Agent {agent} exited with code {exit_code}",
        code=ExitCode.TRANSPORT_ERROR,
        hint=hint,
    )


class DirectCaptureTransport:
    """Runs the agent CLI as a child process with the prompt on stdin."""

    def __init__(
        self,
        agent_command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        *,
        on_output: OutputSink | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not agent_command:
            raise SpecPilotError(
                "Agent command cannot be empty.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Configure agent_cli.",
            )
        self.agent_command = tuple(agent_command)
        self.on_output = on_output
        self.env = env

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        logger.debug("direct-invoke agent=%s command=%s cwd=%s", request.agent, self.agent_command, request.project_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.agent_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(request.project_path),
                env=self.env,
            )
        except FileNotFoundError as exc:
            raise SpecPilotError(
                f"Agent CLI not found: {self.agent_command[0]}",
                code=ExitCode.TRANSPORT_ERROR,
                hint="Install the agent CLI or set agent_cli in the config file.",
            ) from exc
        except OSError as exc:
            raise SpecPilotError(
                f"Failed to start agent {request.agent}.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc),
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                self._communicate(process, request.prompt),
                timeout=request.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            await _kill(process)
            raise SpecPilotError(
                f"Timeout: {request.agent} exceeded {request.timeout_seconds:g}s",
                code=ExitCode.TIMEOUT,
                hint="Raise the agent timeout in the config file.",
            ) from exc
        except asyncio.CancelledError:
            await _kill(process)
            raise

        if process.returncode != 0:
            raise _exit_error(request.agent, process.returncode or 0, stderr)
        return InvocationResult(output=stdout.strip(), exit_code=0)

    async def _communicate(self, process: asyncio.subprocess.Process, prompt: str) -> tuple[str, str]:
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async def feed() -> None:
            assert process.stdin is not None
            process.stdin.write(prompt.encode("utf-8"))
            # The agent may exit before reading its input; its exit code decides.
            with suppress(BrokenPipeError, ConnectionResetError):
                await process.stdin.drain()
            process.stdin.close()

        await asyncio.gather(
            feed(),
            _pump(process.stdout, stdout_parts, self.on_output),
            _pump(process.stderr, stderr_parts, None),
        )
        await process.wait()
        return "".join(stdout_parts), "".join(stderr_parts)


async def _pump(reader: asyncio.StreamReader | None, parts: list[str], sink: OutputSink | None) -> None:
    if reader is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await reader.read(_READ_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            if sink is not None:
                sink(text)
        if not chunk:
            return


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError):
        process.kill()
    await process.wait()


class TerminalTransport:
    """Runs the agent inside an existing shell session so its output stays visible.

    The prompt goes through a private temp file to avoid shell quoting, and
    completion is detected with the session's completion collector.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_id: str,
        *,
        agent_command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        temp_dir: str | Path | None = None,
    ) -> None:
        if not _SESSION_ID.match(session_id):
            raise SpecPilotError(
                f"Invalid session id format: {session_id!r}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use letters, digits, '-' or '_' only.",
            )
        if not agent_command:
            raise SpecPilotError(
                "Agent command cannot be empty.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Configure agent_cli.",
            )
        self.registry = registry
        self.session_id = session_id
        self.agent_command = tuple(agent_command)
        self.grace_seconds = grace_seconds
        self.temp_dir = str(temp_dir) if temp_dir is not None else None

    def build_command(self, project_path: Path, prompt_file: str) -> str:
        return (
            f"cd {shlex.quote(str(project_path))} && {shlex.join(self.agent_command)} "
            f"< {shlex.quote(prompt_file)}; {completion_command()}\n"
        )

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        project_path = _validate_project_path(request.project_path)
        if self.registry.get_session(self.session_id) is None:
            raise SpecPilotError(
                f"Terminal session not found: {self.session_id}",
                code=ExitCode.NOT_FOUND,
                hint="Open the terminal session before running phases.",
            )

        prompt_file = self._write_prompt(request)
        try:
            result = await self._run(request, project_path, prompt_file)
        finally:
            with suppress(OSError):
                os.unlink(prompt_file)

        output = result.output.strip()
        if result.exit_code != 0:
            raise _exit_error(request.agent, result.exit_code)
        return InvocationResult(output=output, exit_code=result.exit_code)

    async def _run(self, request: InvocationRequest, project_path: Path, prompt_file: str) -> CollectorResult:
        waiter = self.registry.arm_collector(self.session_id, request.timeout_seconds + self.grace_seconds)
        try:
            self.registry.write(self.session_id, self.build_command(project_path, prompt_file))
            return await waiter
        except asyncio.CancelledError:
            self._interrupt()
            self._disarm(waiter)
            raise
        except SpecPilotError as exc:
            if exc.code == ExitCode.TIMEOUT:
                self._interrupt()
            self._disarm(waiter)
            raise

    def _write_prompt(self, request: InvocationRequest) -> str:
        try:
            fd, path = tempfile.mkstemp(
                prefix=f"specpilot-{self.session_id}-{request.agent}-",
                suffix=".md",
                dir=self.temp_dir,
            )
        except OSError as exc:
            raise SpecPilotError(
                "Failed to create the prompt file.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc),
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(request.prompt)
        except OSError as exc:
            with suppress(OSError):
                os.unlink(path)
            raise SpecPilotError(
                "Failed to write the prompt file.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc),
            ) from exc
        return path

    def _interrupt(self) -> None:
        try:
            self.registry.interrupt(self.session_id)
        except SpecPilotError:
            logger.debug("interrupt skipped session=%s", self.session_id, exc_info=True)

    def _disarm(self, waiter: asyncio.Future[CollectorResult]) -> None:
        # A finished waiter means the collector is already gone; never touch a newer one.
        if not waiter.done():
            self.registry.disarm_collector(self.session_id)


def _validate_project_path(project_path: Path) -> Path:
    raw = str(project_path)
    if not project_path.is_absolute() or ".." in project_path.parts or os.path.normpath(raw) != raw:
        raise SpecPilotError(
            f"Invalid project path: {raw}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Pass an absolute, normalized project directory.",
        )
    return project_path
