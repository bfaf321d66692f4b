"""Console rendering of autopilot run progress."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from specpilot.autopilot.models import PhaseRun, PhaseStatus, RunSnapshot, RunStatus

RULE_WIDTH = 50


def format_duration(seconds: float | None) -> str:
    total = int(seconds or 0)
    if total < 60:
        return f"{total}s"
    minutes, remainder = divmod(total, 60)
    return f"{minutes}m {remainder}s"


@dataclass(frozen=True)
class RuntimeEvent:
    step: str
    state: str
    message: str


class RunReporter:
    """Orchestrator listener that prints phase banners and results as they happen."""

    def __init__(self, stream: TextIO | None = None, *, verbose: bool = False) -> None:
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self.events: list[RuntimeEvent] = []
        self._seen: dict[int, PhaseStatus] = {}

    def header(self, spec_path: Path, project_path: Path, phase_count: int) -> None:
        self._line()
        self._line("  SpecPilot Autopilot")
        self._line("─" * RULE_WIDTH)
        self._line(f"  Spec:    {spec_path.name}")
        self._line(f"  Project: {project_path.name or project_path}")
        self._line(f"  Phases:  {phase_count} agents")
        self._line("─" * RULE_WIDTH)
        self._line()

    def note(self, message: str) -> None:
        if self.verbose:
            self._line(f"  ({message})")

    def __call__(self, snapshot: RunSnapshot) -> None:
        total = len(snapshot.phases)
        for index, phase in enumerate(snapshot.phases):
            if self._seen.get(index) == phase.status:
                continue
            self._seen[index] = phase.status
            self._render(index, total, phase)

    def summary(self, snapshot: RunSnapshot, total_seconds: float) -> None:
        status = "Completed" if snapshot.status == RunStatus.COMPLETED else "Failed"
        tasks = len(snapshot.tasks_completed)
        self._line("═" * RULE_WIDTH)
        self._line("  Summary")
        self._line("─" * RULE_WIDTH)
        self._line(f"  Status:    {status}")
        self._line(f"  Phases:    {snapshot.completed_count}/{len(snapshot.phases)} completed")
        self._line(f"  Duration:  {format_duration(total_seconds)}")
        if tasks:
            self._line(f"  Tasks:     {tasks} auto-completed")
        self._line("═" * RULE_WIDTH)
        self._line()

    def _render(self, index: int, total: int, phase: PhaseRun) -> None:
        if phase.status == PhaseStatus.RUNNING:
            self._record(phase.agent, "started", phase.name)
            self._line(f"═══ Phase {index + 1}/{total}: {phase.name} (@{phase.agent}) ═══")
            self._line()
        elif phase.status == PhaseStatus.COMPLETED:
            self._record(phase.agent, "success", f"{phase.name} completed")
            self._line()
            self._line(f"✓ {phase.name} completed in {format_duration(phase.duration_seconds)}")
            if phase.tasks_completed:
                self._line("  Tasks auto-completed:")
                for task in phase.tasks_completed:
                    self._line(f"    ✓ {task}")
            self._line()
        elif phase.status == PhaseStatus.FAILED:
            self._record(phase.agent, "error", phase.error)
            self._line()
            self._line(f"✗ {phase.name} failed after {format_duration(phase.duration_seconds)}")
            self._line(f"  Error: {phase.error or 'Unknown error'}")
            self._line()
        elif phase.status == PhaseStatus.SKIPPED:
            self._record(phase.agent, "skipped", phase.name)
            self._line(f"- {phase.name} skipped")

    def _record(self, step: str, state: str, message: str) -> None:
        self.events.append(RuntimeEvent(step=step, state=state, message=message))

    def _line(self, text: str = "") -> None:
        print(text, file=self.stream, flush=True)
