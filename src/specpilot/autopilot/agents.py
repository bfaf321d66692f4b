"""Fixed agent catalog, phase descriptors and prompt construction."""

from __future__ import annotations

import logging as py_logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = py_logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(spec_content|previous_output)\}")
NO_PREVIOUS_OUTPUT = "N/A"
OUTPUT_SEPARATOR = "\n---\n"
AGENT_DEFINITION_DIR = Path(".claude") / "commands" / "agents"


class AgentId(str, Enum):
    STRATEGIST = "strategist"
    ARCHITECT = "architect"
    SYSTEM_DESIGNER = "system-designer"
    BUILDER = "builder"
    GUARDIAN = "guardian"
    CHRONICLER = "chronicler"


@dataclass(frozen=True)
class Phase:
    agent: AgentId
    name: str
    timeout_seconds: int
    template: str

    @property
    def skill(self) -> str:
        return f"/agents:{self.agent.value}"


_TEMPLATES: dict[AgentId, str] = {
    AgentId.STRATEGIST: """Analyze the spec and refine its requirements:
{spec_content}

1. Identify implicit requirements
2. List acceptance criteria
3. Dependencies and risks
4. Estimate complexity""",
    AgentId.ARCHITECT: """Define the architecture based on the spec:
{spec_content}

Previous context: {previous_output}

1. Solution architecture
2. Patterns and technologies
3. Required components
4. Key decisions""",
    AgentId.SYSTEM_DESIGNER: """Design the system based on the spec:
{spec_content}

Previous context: {previous_output}

1. Back-of-the-envelope estimation
2. High-level design
3. Data model and storage
4. Scalability and reliability""",
    AgentId.BUILDER: """Implement the solution following the spec and design:
{spec_content}

Previous context: {previous_output}

1. Create or modify the required files
2. Implement the main logic
3. Error handling""",
    AgentId.GUARDIAN: """Review the implemented code:
{spec_content}

Implementation: {previous_output}

1. Security
2. Performance
3. Edge cases
4. Required improvements""",
    AgentId.CHRONICLER: """Document the changes made:
{spec_content}

Implementation: {previous_output}

1. Summarize what was implemented
2. Files created or modified
3. Update the tasks in the spec""",
}

DEFAULT_PHASES: tuple[Phase, ...] = (
    Phase(AgentId.STRATEGIST, "Planning", 300, _TEMPLATES[AgentId.STRATEGIST]),
    Phase(AgentId.ARCHITECT, "Design", 600, _TEMPLATES[AgentId.ARCHITECT]),
    Phase(AgentId.SYSTEM_DESIGNER, "System Design", 600, _TEMPLATES[AgentId.SYSTEM_DESIGNER]),
    Phase(AgentId.BUILDER, "Implementation", 1200, _TEMPLATES[AgentId.BUILDER]),
    Phase(AgentId.GUARDIAN, "Validation", 600, _TEMPLATES[AgentId.GUARDIAN]),
    Phase(AgentId.CHRONICLER, "Documentation", 300, _TEMPLATES[AgentId.CHRONICLER]),
)

VALID_AGENTS: tuple[str, ...] = tuple(agent.value for agent in AgentId)
DEFAULT_PHASE_ORDER: tuple[str, ...] = tuple(phase.agent.value for phase in DEFAULT_PHASES)
AGENT_TIMEOUTS: dict[str, int] = {phase.agent.value: phase.timeout_seconds for phase in DEFAULT_PHASES}
# Agents whose output is scanned for completed spec checklist items.
TASK_TRACKING_AGENTS: frozenset[str] = frozenset(
    {AgentId.BUILDER.value, AgentId.GUARDIAN.value, AgentId.CHRONICLER.value}
)


def is_valid_agent(agent: str) -> bool:
    return agent in VALID_AGENTS


def phase_catalog(timeouts: dict[str, int] | None = None) -> dict[str, Phase]:
    """Return the phases by agent id, with optional per-agent timeout overrides."""
    overrides = timeouts or {}
    catalog: dict[str, Phase] = {}
    for phase in DEFAULT_PHASES:
        seconds = overrides.get(phase.agent.value, phase.timeout_seconds)
        catalog[phase.agent.value] = Phase(phase.agent, phase.name, seconds, phase.template)
    return catalog


def load_agent_definition(project_path: str | Path, agent: str) -> str | None:
    path = Path(project_path) / AGENT_DEFINITION_DIR / f"{agent}.md"
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeError):
        logger.warning("Agent definition unreadable path=%s", path, exc_info=True)
        return None


def build_prompt(
    phase: Phase,
    spec_text: str,
    previous_outputs: Sequence[str],
    definition: str | None = None,
) -> str:
    previous = OUTPUT_SEPARATOR.join(previous_outputs) or NO_PREVIOUS_OUTPUT
    values = {"spec_content": spec_text, "previous_output": previous}
    prompt = _PLACEHOLDER.sub(lambda match: values[match.group(1)], phase.template)
    context = definition or phase.skill
    return f"{context}\n\n---\n\n{prompt}"
