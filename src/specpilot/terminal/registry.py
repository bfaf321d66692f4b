"""Registry of live pseudo-terminal sessions and their output fan-out."""

from __future__ import annotations

import asyncio
import atexit
import logging as py_logging
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from specpilot.errors import ExitCode, SpecPilotError
from specpilot.terminal.collector import CompletionCollector
from specpilot.terminal.models import CollectorResult, SessionEvent, SessionEventKind, TerminalSession
from specpilot.terminal.pty_backend import PtyBackend, PtyProcess

if TYPE_CHECKING:
    from specpilot.terminal.stream import SessionStream

logger = py_logging.getLogger(__name__)

DEFAULT_REPLAY_LIMIT = 1000
INTERRUPT = "\x03"

SessionListener = Callable[[SessionEvent], None]


@dataclass
class _SessionEntry:
    session: TerminalSession
    process: PtyProcess


class Subscription:
    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Callable[[], None] | None = release

    @property
    def closed(self) -> bool:
        return self._release is None

    def close(self) -> None:
        if self._release is not None:
            release, self._release = self._release, None
            release()


class SessionRegistry:
    """Owns PTY sessions by id.

    Every output chunk goes to the session's replay buffer, then to the armed
    completion collector, then to subscribers, in arrival order. Mutations
    run synchronously on the event loop thread, so no caller ever observes a
    session half torn down.
    """

    def __init__(
        self,
        backend: PtyBackend | None = None,
        *,
        replay_limit: int = DEFAULT_REPLAY_LIMIT,
    ) -> None:
        if replay_limit <= 0:
            raise SpecPilotError(
                f"Invalid replay limit: {replay_limit}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a positive chunk count.",
            )
        self.replay_limit = replay_limit
        self._backend = backend or PtyBackend()
        self._sessions: dict[str, _SessionEntry] = {}
        self._buffers: dict[str, deque[str]] = {}
        self._collectors: dict[str, CompletionCollector] = {}
        self._listeners: dict[str, list[SessionListener]] = {}
        atexit.register(self.close_all)

    def create_session(
        self,
        session_id: str,
        cwd: str | Path | None,
        cols: int = 80,
        rows: int = 24,
    ) -> TerminalSession:
        if not session_id.strip():
            raise SpecPilotError(
                "Session id is required.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Pass a non-empty session id.",
            )
        existing = self._sessions.get(session_id)
        if existing is not None:
            if existing.process.isalive():
                logger.info("runtime-event session=%s step=create message=Session already exists.", session_id)
                return existing.session
            self._teardown(session_id, exit_code=None)

        handle = self._backend.open(cwd=cwd, cols=cols, rows=rows)
        session = TerminalSession(
            session_id=session_id,
            cwd=handle.cwd,
            cols=cols,
            rows=rows,
            command=handle.command,
            pid=handle.process.pid,
        )
        entry = _SessionEntry(session=session, process=handle.process)
        self._sessions[session_id] = entry
        self._buffers[session_id] = deque(maxlen=self.replay_limit)
        try:
            handle.process.attach(partial(self._on_data, entry), partial(self._on_exit, entry))
        except Exception as exc:
            self._sessions.pop(session_id, None)
            self._buffers.pop(session_id, None)
            with suppress(Exception):
                handle.process.terminate()
            raise SpecPilotError(
                f"Failed to attach to session {session_id}.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc) or "Create the session from inside a running event loop.",
            ) from exc
        logger.info(
            "runtime-event session=%s step=create message=Spawned %s in %s.",
            session_id,
            handle.command[0] if handle.command else "shell",
            handle.cwd,
        )
        return session

    def get_session(self, session_id: str) -> TerminalSession | None:
        entry = self._sessions.get(session_id)
        return entry.session if entry is not None else None

    def list_sessions(self) -> list[str]:
        return sorted(self._sessions)

    def write(self, session_id: str, data: str) -> None:
        entry = self._require(session_id)
        try:
            entry.process.write(data)
        except OSError as exc:
            raise SpecPilotError(
                f"Failed to write to session {session_id}.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc) or "Verify the shell process is still running.",
            ) from exc

    def interrupt(self, session_id: str) -> None:
        self.write(session_id, INTERRUPT)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            raise SpecPilotError(
                f"Invalid PTY size: {cols}x{rows}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use positive terminal row/column values.",
            )
        entry = self._require(session_id)
        try:
            entry.process.resize(cols, rows)
        except OSError as exc:
            raise SpecPilotError(
                f"Failed to resize session {session_id}.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc) or "Verify the PTY supports resizing.",
            ) from exc
        entry.session.cols = cols
        entry.session.rows = rows

    def destroy(self, session_id: str) -> None:
        entry = self._require(session_id)
        try:
            entry.process.terminate()
        except Exception:
            logger.warning("Failed to terminate session=%s", session_id, exc_info=True)
        self._teardown(session_id, exit_code=None)
        logger.info("runtime-event session=%s step=destroy message=Session destroyed.", session_id)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                self.destroy(session_id)
            except Exception:
                logger.debug("close-all failed session=%s", session_id, exc_info=True)

    def output_buffer(self, session_id: str) -> list[str]:
        return list(self._buffers.get(session_id, ()))

    def clear_output_buffer(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is not None:
            buffer.clear()

    def drain_output_buffer(self, session_id: str) -> str:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return ""
        replay = "".join(buffer)
        buffer.clear()
        return replay

    def subscribe(self, session_id: str, listener: SessionListener) -> Subscription:
        self._require(session_id)
        listeners = self._listeners.setdefault(session_id, [])
        listeners.append(listener)
        return Subscription(partial(self._unsubscribe, session_id, listener))

    def stream(self, session_id: str) -> SessionStream:
        from specpilot.terminal.stream import SessionStream

        return SessionStream(self, session_id)

    def arm_collector(self, session_id: str, timeout_seconds: float) -> asyncio.Future[CollectorResult]:
        """Wait for the next completion marker on ``session_id``.

        A collector already armed on the session is rejected as superseded.
        """
        self._require(session_id)
        if timeout_seconds <= 0:
            raise SpecPilotError(
                f"Invalid collector timeout: {timeout_seconds}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a positive timeout in seconds.",
            )
        previous = self._collectors.pop(session_id, None)
        if previous is not None:
            previous.reject(
                SpecPilotError(
                    f"Completion wait on session {session_id} was superseded.",
                    code=ExitCode.SUPERSEDED,
                    hint="Only the most recent wait on a session is kept.",
                )
            )
        collector = CompletionCollector(
            session_id,
            loop=asyncio.get_running_loop(),
            on_settled=self._forget_collector,
        )
        self._collectors[session_id] = collector
        collector.start_timer(timeout_seconds)
        logger.debug("collector-arm session=%s timeout=%s", session_id, timeout_seconds)
        return collector.future

    def disarm_collector(self, session_id: str) -> bool:
        collector = self._collectors.get(session_id)
        if collector is None:
            return False
        return collector.cancel()

    def has_collector(self, session_id: str) -> bool:
        return session_id in self._collectors

    def _on_data(self, entry: _SessionEntry, chunk: str) -> None:
        session_id = entry.session.session_id
        if self._sessions.get(session_id) is not entry:
            return
        self._buffers[session_id].append(chunk)
        collector = self._collectors.get(session_id)
        if collector is not None:
            collector.feed(chunk)
        self._publish(SessionEvent(session_id=session_id, kind=SessionEventKind.DATA, data=chunk))

    def _on_exit(self, entry: _SessionEntry, exit_code: int | None) -> None:
        session_id = entry.session.session_id
        if self._sessions.get(session_id) is not entry:
            return
        logger.info("runtime-event session=%s step=exit message=Shell exited with %s.", session_id, exit_code)
        self._teardown(session_id, exit_code=exit_code)

    def _teardown(self, session_id: str, *, exit_code: int | None) -> None:
        self._sessions.pop(session_id, None)
        self._buffers.pop(session_id, None)
        collector = self._collectors.pop(session_id, None)
        if collector is not None:
            collector.reject(
                SpecPilotError(
                    f"Session {session_id} exited during collection.",
                    code=ExitCode.SESSION_EXITED,
                    hint="Recreate the terminal session and retry the phase.",
                )
            )
        event = SessionEvent(session_id=session_id, kind=SessionEventKind.EXIT, exit_code=exit_code)
        self._publish(event)
        self._listeners.pop(session_id, None)

    def _publish(self, event: SessionEvent) -> None:
        for listener in list(self._listeners.get(event.session_id, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed session=%s kind=%s", event.session_id, event.kind.value)

    def _unsubscribe(self, session_id: str, listener: SessionListener) -> None:
        listeners = self._listeners.get(session_id)
        if not listeners:
            return
        with suppress(ValueError):
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(session_id, None)

    def _forget_collector(self, collector: CompletionCollector) -> None:
        if self._collectors.get(collector.session_id) is collector:
            del self._collectors[collector.session_id]

    def _require(self, session_id: str) -> _SessionEntry:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise SpecPilotError(
                f"Session not found: {session_id}",
                code=ExitCode.NOT_FOUND,
                hint="Create the terminal session first.",
            )
        return entry

