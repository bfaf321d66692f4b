from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from specpilot.autopilot import (
    InvocationRequest,
    InvocationResult,
    PhaseOrchestrator,
    PhaseStatus,
    RunSnapshot,
    RunStatus,
)
from specpilot.errors import ExitCode, SpecPilotError
from specpilot.specs.tasks import CompletionHeuristic


class _ScriptedTransport:
    def __init__(self, outcomes: dict[str, str | BaseException] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.requests: list[InvocationRequest] = []

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.requests.append(request)
        outcome = self.outcomes.get(request.agent, f"output of {request.agent}")
        if isinstance(outcome, BaseException):
            raise outcome
        return InvocationResult(output=outcome)


class _BlockingTransport:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return InvocationResult(output="never")


class _Synchronizer:
    def __init__(self, completed: list[str]) -> None:
        self.completed = completed
        self.calls: list[tuple[Path, str]] = []

    def __call__(self, path: Path, output: str, heuristic: CompletionHeuristic) -> list[str]:
        del heuristic
        self.calls.append((path, output))
        return list(self.completed)


def _no_definition(_project: Path, _agent: str) -> str | None:
    return None


def _orchestrator(transport: object, **kwargs: object) -> PhaseOrchestrator:
    kwargs.setdefault("definition_loader", _no_definition)
    kwargs.setdefault("synchronizer", _Synchronizer([]))
    return PhaseOrchestrator(transport, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_all_phases_complete_in_order(tmp_path: Path) -> None:
    transport = _ScriptedTransport()
    orchestrator = _orchestrator(transport)

    snapshot = await orchestrator.start(["strategist", "architect", "builder"], "SPEC", tmp_path / "spec.md", tmp_path)

    assert snapshot.status == RunStatus.COMPLETED
    assert [phase.status for phase in snapshot.phases] == [PhaseStatus.COMPLETED] * 3
    assert [request.agent for request in transport.requests] == ["strategist", "architect", "builder"]
    assert [phase.name for phase in snapshot.phases] == ["Planning", "Design", "Implementation"]
    assert snapshot.completed_count == 3


@pytest.mark.asyncio
async def test_prompts_accumulate_previous_outputs(tmp_path: Path) -> None:
    transport = _ScriptedTransport({"strategist": "plan A", "architect": "design B"})
    orchestrator = _orchestrator(transport)

    await orchestrator.start(["strategist", "architect", "builder"], "THE SPEC", None, tmp_path)

    first, second, third = (request.prompt for request in transport.requests)
    assert "THE SPEC" in first
    assert "Previous context" not in first
    assert "Previous context: plan A" in second
    assert "Previous context: plan A\n---\ndesign B" in third
    assert first.startswith("/agents:strategist\n\n---\n\n")


@pytest.mark.asyncio
async def test_phase_timeouts_come_from_catalog(tmp_path: Path) -> None:
    transport = _ScriptedTransport()
    orchestrator = _orchestrator(transport)

    await orchestrator.start(["builder", "chronicler"], "spec", None, tmp_path)

    assert [request.timeout_seconds for request in transport.requests] == [1200, 300]
    assert all(request.project_path == tmp_path for request in transport.requests)


@pytest.mark.asyncio
async def test_failure_halts_run_and_skips_remaining_phases(tmp_path: Path) -> None:
    transport = _ScriptedTransport(
        {"architect": SpecPilotError("Timeout: architect exceeded 600s", code=ExitCode.TIMEOUT)}
    )
    orchestrator = _orchestrator(transport)

    snapshot = await orchestrator.start(["strategist", "architect", "builder"], "spec", None, tmp_path)

    assert snapshot.status == RunStatus.FAILED
    assert [phase.status for phase in snapshot.phases] == [
        PhaseStatus.COMPLETED,
        PhaseStatus.FAILED,
        PhaseStatus.SKIPPED,
    ]
    assert snapshot.phases[1].error == "Timeout: architect exceeded 600s"
    assert snapshot.error == "Timeout: architect exceeded 600s"
    assert "builder" not in [request.agent for request in transport.requests]


@pytest.mark.asyncio
async def test_unexpected_transport_error_fails_phase(tmp_path: Path) -> None:
    transport = _ScriptedTransport({"strategist": OSError("disk full")})
    orchestrator = _orchestrator(transport)

    snapshot = await orchestrator.start(["strategist", "architect"], "spec", None, tmp_path)

    assert snapshot.phases[0].status == PhaseStatus.FAILED
    assert snapshot.phases[0].error == "disk full"
    assert snapshot.phases[1].status == PhaseStatus.SKIPPED


@pytest.mark.asyncio
async def test_unknown_agent_is_rejected_before_anything_runs(tmp_path: Path) -> None:
    transport = _ScriptedTransport()
    orchestrator = _orchestrator(transport)

    with pytest.raises(SpecPilotError) as exc:
        await orchestrator.start(["strategist", "wizard"], "spec", None, tmp_path)

    assert exc.value.code == ExitCode.VALIDATION_ERROR
    assert "wizard" in exc.value.message
    assert transport.requests == []
    assert orchestrator.status == RunStatus.IDLE


@pytest.mark.asyncio
async def test_empty_phase_selection_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(SpecPilotError) as exc:
        await _orchestrator(_ScriptedTransport()).start([], "spec", None, tmp_path)
    assert exc.value.code == ExitCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_task_sync_runs_for_tracking_agents_with_output(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.md"
    synchronizer = _Synchronizer(["Write tests"])
    transport = _ScriptedTransport({"chronicler": "   "})
    orchestrator = _orchestrator(transport, synchronizer=synchronizer)

    snapshot = await orchestrator.start(["strategist", "builder", "chronicler"], "spec", spec_path, tmp_path)

    assert synchronizer.calls == [(spec_path, "output of builder")]
    assert snapshot.phases[0].tasks_completed == []
    assert snapshot.phases[1].tasks_completed == ["Write tests"]
    assert snapshot.phases[2].tasks_completed == []
    assert snapshot.tasks_completed == ["Write tests"]


@pytest.mark.asyncio
async def test_task_sync_can_be_disabled(tmp_path: Path) -> None:
    synchronizer = _Synchronizer(["Write tests"])
    orchestrator = _orchestrator(_ScriptedTransport(), synchronizer=synchronizer, update_tasks=False)

    await orchestrator.start(["builder"], "spec", tmp_path / "spec.md", tmp_path)

    assert synchronizer.calls == []


@pytest.mark.asyncio
async def test_task_sync_updates_real_spec_file(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.md"
    spec_path.write_text("# Spec\n- [ ] Implement the login endpoint\n- [ ] Ship it\n", encoding="utf-8")
    transport = _ScriptedTransport({"builder": "Finished: implement the login endpoint, with tests."})
    orchestrator = PhaseOrchestrator(transport, definition_loader=_no_definition)

    snapshot = await orchestrator.start(["builder"], spec_path.read_text(encoding="utf-8"), spec_path, tmp_path)

    assert snapshot.phases[0].tasks_completed == ["Implement the login endpoint"]
    assert spec_path.read_text(encoding="utf-8") == "# Spec\n- [x] Implement the login endpoint\n- [ ] Ship it\n"


@pytest.mark.asyncio
async def test_project_definition_replaces_skill_reference(tmp_path: Path) -> None:
    transport = _ScriptedTransport()
    loaded: list[tuple[Path, str]] = []

    def loader(project: Path, agent: str) -> str | None:
        loaded.append((project, agent))
        return "# Builder agent\nYou build things." if agent == "builder" else None

    orchestrator = _orchestrator(transport, definition_loader=loader)
    await orchestrator.start(["strategist", "builder"], "spec", None, tmp_path)

    assert loaded == [(tmp_path, "strategist"), (tmp_path, "builder")]
    assert transport.requests[0].prompt.startswith("/agents:strategist")
    assert transport.requests[1].prompt.startswith("# Builder agent\nYou build things.\n\n---\n\n")


@pytest.mark.asyncio
async def test_durations_are_measured_with_clock(tmp_path: Path) -> None:
    ticks = iter([10.0, 12.5, 20.0, 27.0])
    orchestrator = _orchestrator(_ScriptedTransport(), clock=lambda: next(ticks))

    snapshot = await orchestrator.start(["strategist", "architect"], "spec", None, tmp_path)

    assert [phase.duration_seconds for phase in snapshot.phases] == [2.5, 7.0]


@pytest.mark.asyncio
async def test_abort_cancels_inflight_phase(tmp_path: Path) -> None:
    transport = _BlockingTransport()
    orchestrator = _orchestrator(transport)
    run = asyncio.ensure_future(orchestrator.start(["strategist", "architect", "builder"], "spec", None, tmp_path))
    await transport.started.wait()

    await orchestrator.abort()
    snapshot = await run

    assert transport.cancelled
    assert snapshot.status == RunStatus.FAILED
    assert [phase.status for phase in snapshot.phases] == [
        PhaseStatus.FAILED,
        PhaseStatus.SKIPPED,
        PhaseStatus.SKIPPED,
    ]
    assert snapshot.phases[0].error == "Aborted by user"


class _ErrorOnCancelTransport(_BlockingTransport):
    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        try:
            return await super().invoke(request)
        except asyncio.CancelledError:
            raise SpecPilotError("agent killed", code=ExitCode.TRANSPORT_ERROR) from None


@pytest.mark.asyncio
async def test_abort_message_wins_over_transport_error(tmp_path: Path) -> None:
    transport = _ErrorOnCancelTransport()
    orchestrator = _orchestrator(transport)
    run = asyncio.ensure_future(orchestrator.start(["strategist", "builder"], "spec", None, tmp_path))
    await transport.started.wait()

    await orchestrator.abort()
    snapshot = await run

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.phases[0].error == "Aborted by user"
    assert snapshot.phases[1].status == PhaseStatus.SKIPPED


@pytest.mark.asyncio
async def test_abort_when_idle_is_a_no_op() -> None:
    orchestrator = _orchestrator(_ScriptedTransport())

    await orchestrator.abort()

    assert orchestrator.status == RunStatus.IDLE


@pytest.mark.asyncio
async def test_second_start_while_running_is_rejected(tmp_path: Path) -> None:
    transport = _BlockingTransport()
    orchestrator = _orchestrator(transport)
    run = asyncio.ensure_future(orchestrator.start(["strategist"], "spec", None, tmp_path))
    await transport.started.wait()

    with pytest.raises(SpecPilotError) as exc:
        await orchestrator.start(["builder"], "spec", None, tmp_path)
    assert exc.value.code == ExitCode.RUNTIME_ERROR

    await orchestrator.abort()
    await run


@pytest.mark.asyncio
async def test_external_cancellation_marks_run_failed(tmp_path: Path) -> None:
    transport = _BlockingTransport()
    orchestrator = _orchestrator(transport)
    run = asyncio.ensure_future(orchestrator.start(["strategist", "builder"], "spec", None, tmp_path))
    await transport.started.wait()

    run.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run

    snapshot = orchestrator.snapshot()
    assert snapshot.status == RunStatus.FAILED
    assert [phase.status for phase in snapshot.phases] == [PhaseStatus.FAILED, PhaseStatus.SKIPPED]


@pytest.mark.asyncio
async def test_listeners_observe_transitions_and_failures_are_isolated(tmp_path: Path) -> None:
    seen: list[RunSnapshot] = []
    orchestrator = _orchestrator(_ScriptedTransport())

    def broken(_snapshot: RunSnapshot) -> None:
        raise RuntimeError("listener crashed")

    orchestrator.subscribe(broken)
    unsubscribe = orchestrator.subscribe(seen.append)

    snapshot = await orchestrator.start(["strategist"], "spec", None, tmp_path)

    assert snapshot.status == RunStatus.COMPLETED
    assert [item.status for item in seen] == [RunStatus.RUNNING, RunStatus.RUNNING, RunStatus.RUNNING, RunStatus.COMPLETED]
    assert [item.phases[0].status for item in seen] == [
        PhaseStatus.PENDING,
        PhaseStatus.RUNNING,
        PhaseStatus.COMPLETED,
        PhaseStatus.COMPLETED,
    ]

    unsubscribe()
    await orchestrator.start(["strategist"], "spec", None, tmp_path)
    assert len(seen) == 4


@pytest.mark.asyncio
async def test_snapshots_are_isolated_from_later_changes(tmp_path: Path) -> None:
    seen: list[RunSnapshot] = []
    orchestrator = _orchestrator(_ScriptedTransport())
    orchestrator.subscribe(seen.append)

    await orchestrator.start(["strategist"], "spec", None, tmp_path)

    assert seen[0].phases[0].status == PhaseStatus.PENDING
    assert seen[0].phases[0].output == ""
