"""Checklist synchronization between agent output and a markdown spec.

Completion detection is a best-effort textual heuristic: an unchecked item is
considered done when its title shows up in the agent output. Short titles are
too ambiguous on their own, so they also need a completion keyword close to
the match. Thresholds live in :class:`CompletionHeuristic` so callers can tune
them without touching the matching code.
"""

from __future__ import annotations

import logging as py_logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = py_logging.getLogger(__name__)

DEFAULT_COMPLETION_KEYWORDS = (
    "completed",
    "done",
    "implemented",
    "finished",
    "created",
    "added",
    "fixed",
    "resolved",
    "built",
    "configured",
    "✅",
    "✓",
    "[x]",
    "complete",
)

_UNCHECKED_TASK = re.compile(r"^[ \t]*[-*][ \t]*\[ \][ \t]*(?:\[[^\]\n]+\][ \t]*)?(.+)$", re.MULTILINE)


@dataclass(frozen=True)
class CompletionHeuristic:
    min_title_length: int = 10
    context_window: int = 200
    keywords: tuple[str, ...] = DEFAULT_COMPLETION_KEYWORDS


DEFAULT_HEURISTIC = CompletionHeuristic()


@dataclass(frozen=True)
class TaskUpdate:
    text: str
    completed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.completed)


def extract_unchecked(text: str) -> list[str]:
    """Return titles of unchecked checklist items in document order."""
    titles: list[str] = []
    for match in _UNCHECKED_TASK.finditer(text):
        title = match.group(1).strip()
        if title:
            titles.append(title)
    return titles


def is_completed_by_output(
    title: str,
    output: str,
    heuristic: CompletionHeuristic = DEFAULT_HEURISTIC,
) -> bool:
    lowered_output = output.lower()
    lowered_title = title.lower()
    if not lowered_title:
        return False

    index = lowered_output.find(lowered_title)
    if index < 0:
        return False
    if len(lowered_title) >= heuristic.min_title_length:
        return True

    start = max(0, index - heuristic.context_window)
    end = index + len(lowered_title) + heuristic.context_window
    context = lowered_output[start:end]
    return any(keyword.lower() in context for keyword in heuristic.keywords)


def _task_line_pattern(title: str) -> re.Pattern[str]:
    return re.compile(
        r"^([ \t]*[-*][ \t]*)\[ \]([ \t]*(?:\[[^\]\n]+\][ \t]*)?)"
        + re.escape(title)
        + r"([ \t\r]*)$",
        re.MULTILINE,
    )


def apply_updates(
    text: str,
    output: str,
    heuristic: CompletionHeuristic = DEFAULT_HEURISTIC,
) -> TaskUpdate:
    completed: list[str] = []
    updated = text
    for title in extract_unchecked(text):
        if title in completed:
            continue
        if not is_completed_by_output(title, output, heuristic):
            continue
        updated, count = _task_line_pattern(title).subn(
            lambda match: f"{match.group(1)}[x]{match.group(2)}{title}{match.group(3)}",
            updated,
        )
        if count:
            completed.append(title)
    return TaskUpdate(text=updated, completed=completed)


def sync_spec_file(
    path: str | Path,
    output: str,
    heuristic: CompletionHeuristic = DEFAULT_HEURISTIC,
) -> list[str]:
    """Check off items of ``path`` that ``output`` reports as done.

    I/O failures are logged and reported as "nothing completed"; a spec
    update must never fail the phase that produced the output.
    """
    spec_path = Path(path)
    try:
        with spec_path.open(encoding="utf-8", newline="") as handle:
            content = handle.read()
        result = apply_updates(content, output, heuristic)
        if result.changed:
            with spec_path.open("w", encoding="utf-8", newline="") as handle:
                handle.write(result.text)
    except (OSError, UnicodeError):
        logger.warning("spec-sync failed path=%s", spec_path, exc_info=True)
        return []
    if result.completed:
        logger.info("spec-sync path=%s completed=%s", spec_path, len(result.completed))
    return list(result.completed)
