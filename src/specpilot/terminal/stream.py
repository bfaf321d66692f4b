"""Async iteration over a session's output for push-based observers."""

from __future__ import annotations

import asyncio
import logging as py_logging
import weakref
from collections.abc import Callable
from typing import TYPE_CHECKING

from specpilot.terminal.models import SessionEvent, SessionEventKind

if TYPE_CHECKING:
    from specpilot.terminal.registry import SessionRegistry

logger = py_logging.getLogger(__name__)

DEFAULT_STREAM_BACKLOG = 10_000


class SessionStream:
    """Replay-then-live view of one session.

    The replay buffer is drained on attach and yielded as a single data
    event, then live events follow until the session exits. Observers that
    fall more than ``backlog`` events behind lose the oldest ones. The
    registry only holds a weak reference, so an abandoned stream releases
    its listener when it is garbage collected; ``close()`` releases it
    immediately.
    """

    def __init__(self, registry: SessionRegistry, session_id: str, *, backlog: int = DEFAULT_STREAM_BACKLOG) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=backlog)
        subscription = registry.subscribe(session_id, _weak_listener(weakref.WeakMethod(self._enqueue)))
        self._release = weakref.finalize(self, subscription.close)
        replay = registry.drain_output_buffer(session_id)
        self._replay: SessionEvent | None = None
        if replay:
            self._replay = SessionEvent(session_id=session_id, kind=SessionEventKind.DATA, data=replay)
        self._finished = False

    def __aiter__(self) -> SessionStream:
        return self

    async def __anext__(self) -> SessionEvent:
        if self._replay is not None:
            event, self._replay = self._replay, None
            return event
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.kind == SessionEventKind.EXIT:
            self._finished = True
            self.close()
        return event

    async def __aenter__(self) -> SessionStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._release()

    def _enqueue(self, event: SessionEvent) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.debug("stream-overflow session=%s dropped=%s", self.session_id, dropped.kind.value)
        self._queue.put_nowait(event)


def _weak_listener(method: weakref.WeakMethod) -> Callable[[SessionEvent], None]:
    def forward(event: SessionEvent) -> None:
        enqueue = method()
        if enqueue is not None:
            enqueue(event)

    return forward
