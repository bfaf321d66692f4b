"""Specification document helpers."""

from .tasks import (
    DEFAULT_HEURISTIC,
    CompletionHeuristic,
    TaskUpdate,
    apply_updates,
    extract_unchecked,
    is_completed_by_output,
    sync_spec_file,
)

__all__ = [
    "apply_updates",
    "CompletionHeuristic",
    "DEFAULT_HEURISTIC",
    "extract_unchecked",
    "is_completed_by_output",
    "sync_spec_file",
    "TaskUpdate",
]
