"""Agent phase catalog, transports and the sequential phase orchestrator."""

from .agents import AgentId, Phase, build_prompt, load_agent_definition, phase_catalog
from .models import InvocationRequest, InvocationResult, PhaseRun, PhaseStatus, RunSnapshot, RunStatus
from .orchestrator import PhaseOrchestrator
from .transport import AgentTransport, DirectCaptureTransport, TerminalTransport

__all__ = [
    "AgentId",
    "AgentTransport",
    "build_prompt",
    "DirectCaptureTransport",
    "InvocationRequest",
    "InvocationResult",
    "load_agent_definition",
    "Phase",
    "phase_catalog",
    "PhaseOrchestrator",
    "PhaseRun",
    "PhaseStatus",
    "RunSnapshot",
    "RunStatus",
    "TerminalTransport",
]
