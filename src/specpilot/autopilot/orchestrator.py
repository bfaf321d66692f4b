"""Sequential phase execution from selected agents to a finished run."""

from __future__ import annotations

import asyncio
import logging as py_logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from specpilot.autopilot.agents import (
    TASK_TRACKING_AGENTS,
    Phase,
    build_prompt,
    load_agent_definition,
    phase_catalog,
)
from specpilot.autopilot.models import (
    InvocationRequest,
    PhaseRun,
    PhaseStatus,
    RunSnapshot,
    RunStatus,
)
from specpilot.autopilot.transport import AgentTransport
from specpilot.errors import ExitCode, SpecPilotError
from specpilot.specs.tasks import DEFAULT_HEURISTIC, CompletionHeuristic, sync_spec_file

logger = py_logging.getLogger(__name__)

ABORT_MESSAGE = "Aborted by user"
CANCEL_MESSAGE = "Run cancelled"

Synchronizer = Callable[[Path, str, CompletionHeuristic], list[str]]
DefinitionLoader = Callable[[Path, str], str | None]
RunListener = Callable[[RunSnapshot], None]


class RunRequest(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    agent_ids: list[str]
    spec_text: str
    spec_path: Path | None = None
    project_path: Path


class PhaseOrchestrator:
    """Runs agent phases strictly in order and halts on the first failure.

    Each phase prompt embeds the outputs of every earlier completed phase.
    Observers receive an immutable snapshot after every state change.
    """

    def __init__(
        self,
        transport: AgentTransport,
        *,
        catalog: Mapping[str, Phase] | None = None,
        synchronizer: Synchronizer = sync_spec_file,
        definition_loader: DefinitionLoader = load_agent_definition,
        update_tasks: bool = True,
        task_tracking_agents: Iterable[str] = TASK_TRACKING_AGENTS,
        heuristic: CompletionHeuristic = DEFAULT_HEURISTIC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.catalog = dict(catalog) if catalog is not None else phase_catalog()
        self.synchronizer = synchronizer
        self.definition_loader = definition_loader
        self.update_tasks = update_tasks
        self.task_tracking_agents = frozenset(task_tracking_agents)
        self.heuristic = heuristic
        self.clock = clock
        self._status = RunStatus.IDLE
        self._phases: list[PhaseRun] = []
        self._current = -1
        self._error = ""
        self._phase_started: float | None = None
        self._inflight: asyncio.Future[object] | None = None
        self._aborted = False
        self._listeners: list[RunListener] = []

    @property
    def status(self) -> RunStatus:
        return self._status

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            status=self._status,
            phases=tuple(phase.copy() for phase in self._phases),
            current_index=self._current,
            error=self._error,
        )

    def subscribe(self, listener: RunListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(
        self,
        agent_ids: Sequence[str],
        spec_text: str,
        spec_path: str | Path | None,
        project_path: str | Path,
    ) -> RunSnapshot:
        if self._status == RunStatus.RUNNING:
            raise SpecPilotError(
                "A run is already in progress.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Wait for the current run to finish or abort it.",
            )
        request = RunRequest(
            agent_ids=list(agent_ids),
            spec_text=spec_text,
            spec_path=Path(spec_path) if spec_path is not None else None,
            project_path=Path(project_path),
        )
        self._validate(request.agent_ids)

        self._phases = [PhaseRun(agent=agent, name=self.catalog[agent].name) for agent in request.agent_ids]
        self._status = RunStatus.RUNNING
        self._current = -1
        self._error = ""
        self._aborted = False
        logger.info("run-start phases=%s project=%s", ",".join(request.agent_ids), request.project_path)
        self._notify()

        try:
            await self._run(request)
        finally:
            self._inflight = None
            self._phase_started = None
        return self.snapshot()

    async def abort(self) -> None:
        if self._status != RunStatus.RUNNING:
            return
        logger.warning("run-abort phase_index=%s", self._current)
        self._aborted = True
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            await asyncio.wait({inflight})
        self._halt(ABORT_MESSAGE)

    def _validate(self, agent_ids: list[str]) -> None:
        if not agent_ids:
            raise SpecPilotError(
                "No phases selected.",
                code=ExitCode.VALIDATION_ERROR,
                hint=f"Choose from: {', '.join(self.catalog)}",
            )
        unknown = [agent for agent in agent_ids if agent not in self.catalog]
        if unknown:
            raise SpecPilotError(
                f"Unknown agent ids: {', '.join(unknown)}",
                code=ExitCode.VALIDATION_ERROR,
                hint=f"Choose from: {', '.join(self.catalog)}",
            )

    async def _run(self, request: RunRequest) -> None:
        outputs: tuple[str, ...] = ()
        for index, phase_run in enumerate(self._phases):
            if self._aborted:
                break
            phase = self.catalog[phase_run.agent]
            self._current = index
            self._phase_started = self.clock()
            phase_run.transition(PhaseStatus.RUNNING)
            logger.info("phase-start index=%s agent=%s timeout=%s", index, phase.agent.value, phase.timeout_seconds)
            self._notify()

            definition = self.definition_loader(request.project_path, phase_run.agent)
            prompt = build_prompt(phase, request.spec_text, outputs, definition)
            invocation = InvocationRequest(
                agent=phase_run.agent,
                prompt=prompt,
                project_path=request.project_path,
                timeout_seconds=phase.timeout_seconds,
            )
            self._inflight = asyncio.ensure_future(self.transport.invoke(invocation))
            try:
                result = await self._inflight
            except asyncio.CancelledError:
                if self._aborted:
                    break
                self._halt(CANCEL_MESSAGE)
                raise
            except SpecPilotError as exc:
                if self._aborted:
                    break
                self._fail(phase_run, exc.message)
                return
            except Exception as exc:
                if self._aborted:
                    break
                logger.exception("phase-error agent=%s", phase_run.agent)
                self._fail(phase_run, str(exc) or type(exc).__name__)
                return
            finally:
                self._inflight = None

            if self._aborted:
                break
            phase_run.output = result.output
            phase_run.duration_seconds = self._elapsed()
            phase_run.tasks_completed = self._sync_tasks(request, phase_run)
            phase_run.transition(PhaseStatus.COMPLETED)
            outputs = (*outputs, result.output)
            logger.info(
                "phase-complete agent=%s duration=%.1f tasks=%s",
                phase_run.agent,
                phase_run.duration_seconds,
                len(phase_run.tasks_completed),
            )
            self._notify()

        if self._aborted:
            self._halt(ABORT_MESSAGE)
            return
        self._status = RunStatus.COMPLETED
        logger.info("run-complete phases=%s", len(self._phases))
        self._notify()

    def _sync_tasks(self, request: RunRequest, phase_run: PhaseRun) -> list[str]:
        if not self.update_tasks or request.spec_path is None:
            return []
        if phase_run.agent not in self.task_tracking_agents or not phase_run.output.strip():
            return []
        return list(self.synchronizer(request.spec_path, phase_run.output, self.heuristic))

    def _fail(self, phase_run: PhaseRun, message: str) -> None:
        logger.error("phase-failed agent=%s error=%s", phase_run.agent, message)
        self._halt(message)

    def _halt(self, message: str) -> None:
        if self._status != RunStatus.RUNNING:
            return
        if 0 <= self._current < len(self._phases):
            current = self._phases[self._current]
            if current.status == PhaseStatus.RUNNING:
                current.error = message
                current.duration_seconds = self._elapsed()
                current.transition(PhaseStatus.FAILED)
        for phase_run in self._phases:
            if phase_run.status == PhaseStatus.PENDING:
                phase_run.transition(PhaseStatus.SKIPPED)
        self._status = RunStatus.FAILED
        self._error = message
        self._notify()

    def _elapsed(self) -> float:
        if self._phase_started is None:
            return 0.0
        return max(0.0, self.clock() - self._phase_started)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("run-listener failed status=%s", snapshot.status.value)
