"""Terminal session domain models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SessionEventKind(str, Enum):
    DATA = "data"
    EXIT = "exit"


@dataclass
class TerminalSession:
    session_id: str
    cwd: str
    cols: int
    rows: int
    command: tuple[str, ...] = ()
    pid: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    kind: SessionEventKind
    data: str = ""
    exit_code: int | None = None

    def to_sse(self) -> str:
        payload: dict[str, object] = {"type": self.kind.value}
        if self.kind == SessionEventKind.DATA:
            payload["data"] = self.data
        else:
            payload["exitCode"] = self.exit_code
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@dataclass(frozen=True)
class CollectorResult:
    output: str
    exit_code: int
