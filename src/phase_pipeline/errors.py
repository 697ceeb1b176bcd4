"""Error taxonomy for the phase pipeline.

Every error carries an itemized, human-readable message. Callers that need
structured detail use the attributes set on each class rather than parsing
the message text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import ValidationResult


class PipelineError(RuntimeError):
    """Base class for all orchestration errors."""


class UnknownPhase(PipelineError, ValueError):
    """Raised when a phase id is outside 1-7. Always a caller bug."""

    def __init__(self, phase_id: object) -> None:
        self.phase_id = phase_id
        super().__init__(f"Unknown phase {phase_id!r}: phase ids must be integers 1-7")


class PrerequisiteViolation(PipelineError):
    """Raised when a commit (or a persisted document) skips a prerequisite phase."""

    def __init__(self, phase_id: int, missing: Iterable[int]) -> None:
        self.phase_id = phase_id
        self.missing = tuple(sorted(missing))
        super().__init__(format_blocked_reason(phase_id, self.missing))


class ContextConflict(PipelineError):
    """Raised when two parallel tracks wrote the same phase differently."""

    def __init__(self, story_id: str, phases: Iterable[int], detail: str | None = None) -> None:
        self.story_id = story_id
        self.phases = tuple(sorted(phases))
        message = detail or (
            f"Context conflict for story {story_id}: phase(s) "
            f"{', '.join(str(phase) for phase in self.phases)} written differently on both tracks; "
            "resolve manually before merging"
        )
        super().__init__(message)


class StaleWrite(PipelineError):
    """Raised when the persisted document changed between read and write."""

    def __init__(self, story_id: str, expected_version: str | None, actual_version: str | None) -> None:
        self.story_id = story_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale write for story {story_id}: expected version {expected_version or '<absent>'}, "
            f"found {actual_version or '<absent>'}; re-read the context and retry"
        )


class ValidationFailed(PipelineError):
    """Raised when a candidate phase output does not pass the validation gate."""

    def __init__(self, result: "ValidationResult") -> None:
        self.result = result
        reasons = "; ".join(result.failures) or "no reasons recorded"
        super().__init__(f"Phase {result.phase_id} validation failed: {reasons}")


class PlanNotFound(PipelineError, LookupError):
    """Raised when no plan document exists (or is readable) for a story."""

    def __init__(self, story_id: str, detail: str | None = None) -> None:
        self.story_id = story_id
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Plan not found for story {story_id}{suffix}")


class PhaseExecutionAborted(PipelineError):
    """Raised when an external collaborator was cancelled or timed out."""

    def __init__(self, phase_id: int, reason: str) -> None:
        self.phase_id = phase_id
        self.reason = reason
        super().__init__(f"Phase {phase_id} execution aborted: {reason}; context left unchanged")


def format_blocked_reason(phase_id: int, missing: Iterable[int]) -> str:
    ordered = sorted(missing)
    if len(ordered) == 1:
        return f"Phase {phase_id} blocked: prerequisite phase {ordered[0]} not complete"
    joined = ", ".join(str(item) for item in ordered)
    return f"Phase {phase_id} blocked: prerequisite phases {joined} not complete"
