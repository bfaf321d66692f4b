"""Autopilot run-state models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED}


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.RUNNING, PhaseStatus.SKIPPED}),
    PhaseStatus.RUNNING: frozenset({PhaseStatus.COMPLETED, PhaseStatus.FAILED}),
}


@dataclass
class PhaseRun:
    agent: str
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    output: str = ""
    error: str = ""
    duration_seconds: float | None = None
    tasks_completed: list[str] = field(default_factory=list)

    def transition(self, status: PhaseStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ValueError(f"Invalid phase transition {self.status.value} -> {status.value} for {self.agent}")
        self.status = status

    def copy(self) -> PhaseRun:
        return replace(self, tasks_completed=list(self.tasks_completed))


@dataclass(frozen=True)
class RunSnapshot:
    status: RunStatus
    phases: tuple[PhaseRun, ...]
    current_index: int = -1
    error: str = ""

    @property
    def completed_count(self) -> int:
        return sum(1 for phase in self.phases if phase.status == PhaseStatus.COMPLETED)

    @property
    def tasks_completed(self) -> list[str]:
        return [task for phase in self.phases for task in phase.tasks_completed]


@dataclass(frozen=True)
class InvocationRequest:
    agent: str
    prompt: str
    project_path: Path
    timeout_seconds: float


@dataclass(frozen=True)
class InvocationResult:
    output: str
    exit_code: int = 0
