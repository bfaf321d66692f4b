"""One-shot completion detection over an interactive shell's output stream.

An interactive shell never reports when a foreground command finishes. The
injected command therefore prints a sentinel carrying its own exit status
(``___SPECPILOT_PHASE_DONE_<code>___``) and the collector watches the raw
output until that sentinel shows up. The shell echoes the typed command
line, but the echo still holds the literal ``$?`` rather than digits, so only
the real status line matches.
"""

from __future__ import annotations

import asyncio
import logging as py_logging
import re
from collections.abc import Callable

from specpilot.errors import ExitCode, SpecPilotError
from specpilot.terminal.models import CollectorResult

logger = py_logging.getLogger(__name__)

PHASE_DONE_MARKER = "___SPECPILOT_PHASE_DONE_"
PHASE_DONE_SUFFIX = "___"
PHASE_DONE_PATTERN = re.compile(re.escape(PHASE_DONE_MARKER) + r"(\d+)" + re.escape(PHASE_DONE_SUFFIX))
# Rescan overlap so a marker split across chunks is still found.
_RESCAN_OVERLAP = len(PHASE_DONE_MARKER) + len(PHASE_DONE_SUFFIX) + 16


def completion_command(exit_expr: str = "$?") -> str:
    return f'echo "{PHASE_DONE_MARKER}{exit_expr}{PHASE_DONE_SUFFIX}"'


class CompletionCollector:
    def __init__(
        self,
        session_id: str,
        *,
        loop: asyncio.AbstractEventLoop,
        on_settled: Callable[[CompletionCollector], None],
        pattern: re.Pattern[str] = PHASE_DONE_PATTERN,
    ) -> None:
        self.session_id = session_id
        self.future: asyncio.Future[CollectorResult] = loop.create_future()
        self._loop = loop
        self._on_settled = on_settled
        self._pattern = pattern
        self._buffer = ""
        self._timer: asyncio.TimerHandle | None = None
        self._settled = False
        self.future.add_done_callback(self._on_future_done)

    @property
    def settled(self) -> bool:
        return self._settled

    def start_timer(self, timeout_seconds: float) -> None:
        self._timer = self._loop.call_later(timeout_seconds, self._expire, timeout_seconds)

    def feed(self, chunk: str) -> bool:
        if self._finished():
            return False
        scan_from = max(0, len(self._buffer) - _RESCAN_OVERLAP)
        self._buffer += chunk
        match = self._pattern.search(self._buffer, scan_from)
        if match is None:
            return False
        result = CollectorResult(output=self._buffer[: match.start()], exit_code=int(match.group(1)))
        logger.debug("collector-match session=%s exit_code=%s", self.session_id, result.exit_code)
        self._settle()
        self.future.set_result(result)
        return True

    def reject(self, error: SpecPilotError) -> bool:
        if self._finished():
            return False
        logger.debug("collector-reject session=%s code=%s", self.session_id, error.code.name)
        self._settle()
        self.future.set_exception(error)
        return True

    def cancel(self) -> bool:
        if self._finished():
            return False
        self._settle()
        self.future.cancel()
        return True

    def _expire(self, timeout_seconds: float) -> None:
        self._timer = None
        self.reject(
            SpecPilotError(
                f"No completion marker within {timeout_seconds:g}s on session {self.session_id}.",
                code=ExitCode.TIMEOUT,
                hint="Increase the phase timeout or inspect the terminal output.",
            )
        )

    def _finished(self) -> bool:
        # A waiter cancelled by its owner is done before its done-callback runs.
        if not self._settled and self.future.done():
            self._settle()
        return self._settled

    def _on_future_done(self, future: asyncio.Future[CollectorResult]) -> None:
        # Covers a waiter being cancelled from outside the registry.
        if future.cancelled() and not self._settled:
            self._settle()

    def _settle(self) -> None:
        self._settled = True
        self._buffer = ""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._on_settled(self)
