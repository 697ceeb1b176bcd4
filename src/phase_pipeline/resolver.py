from __future__ import annotations

from .models import ContextDocument, RunDecision
from .registry import get_definition, phase_ids


def can_run(phase_id: object, document: ContextDocument) -> RunDecision:
    """Decide whether *phase_id* may run against *document*.

    Only prerequisite gating applies: a phase that is already complete may be
    re-run, and phases need not run in numeric order.

    Raises:
        UnknownPhase: If *phase_id* is not an integer 1-7.
    """
    definition = get_definition(phase_id)
    missing = definition.prerequisites - document.completed
    if missing:
        return RunDecision.blocked(definition.phase_id, missing)
    return RunDecision.runnable_now(definition.phase_id)


def runnable_phases(document: ContextDocument) -> list[int]:
    """Return every phase id that is not yet complete and has no missing prerequisite."""
    return [
        phase_id
        for phase_id in phase_ids()
        if not document.is_complete(phase_id) and can_run(phase_id, document).runnable
    ]
