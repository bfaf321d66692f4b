"""Pseudo-terminal session domain package."""

from .collector import PHASE_DONE_MARKER, PHASE_DONE_PATTERN, PHASE_DONE_SUFFIX, CompletionCollector, completion_command
from .models import CollectorResult, SessionEvent, SessionEventKind, TerminalSession
from .pty_backend import PtyBackend, PtyHandle, resolve_cwd, resolve_shell
from .registry import SessionRegistry, Subscription
from .stream import SessionStream

__all__ = [
    "CollectorResult",
    "completion_command",
    "CompletionCollector",
    "PHASE_DONE_MARKER",
    "PHASE_DONE_PATTERN",
    "PHASE_DONE_SUFFIX",
    "PtyBackend",
    "PtyHandle",
    "resolve_cwd",
    "resolve_shell",
    "SessionEvent",
    "SessionEventKind",
    "SessionRegistry",
    "SessionStream",
    "Subscription",
    "TerminalSession",
]
