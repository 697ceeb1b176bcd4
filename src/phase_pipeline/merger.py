from __future__ import annotations

import logging

from .errors import ContextConflict, PrerequisiteViolation
from .models import ContextDocument, PhaseOutput
from .resolver import can_run

logger = logging.getLogger(__name__)


def commit(document: ContextDocument, phase_id: object, output: PhaseOutput) -> ContextDocument:
    """Return a new document with *output* recorded as the result of *phase_id*.

    The prior output for the phase, if any, is replaced wholesale and the
    phase is added to the completed set. *document* itself is left untouched,
    so committing the same output twice against the same prior document
    yields equal documents.

    Raises:
        UnknownPhase: If *phase_id* is not an integer 1-7.
        PrerequisiteViolation: If a prerequisite of the phase is not complete.
    """
    decision = can_run(phase_id, document)
    if not decision.runnable:
        raise PrerequisiteViolation(decision.phase_id, decision.missing_prerequisites)

    outputs = dict(document.phase_outputs)
    replaced = decision.phase_id in outputs
    outputs[decision.phase_id] = output
    committed = ContextDocument(
        story_id=document.story_id,
        completed_phases=(*document.completed_phases, decision.phase_id),
        phase_outputs=outputs,
    )
    logger.info(
        "Committed phase %s for story %s%s",
        decision.phase_id,
        document.story_id,
        " (replacing previous output)" if replaced else "",
    )
    return committed


def find_conflicts(left: ContextDocument, right: ContextDocument) -> list[int]:
    """Return the phases both documents wrote with different outputs, ascending."""
    shared = set(left.phase_outputs) & set(right.phase_outputs)
    return sorted(
        phase_id
        for phase_id in shared
        if left.phase_outputs[phase_id].canonical() != right.phase_outputs[phase_id].canonical()
    )


def merge_documents(left: ContextDocument, right: ContextDocument) -> ContextDocument:
    """Combine two independently evolved copies of one story's document.

    Completed phases are unioned and outputs are unioned key by key. A phase
    written differently on both sides is never auto-resolved.

    Raises:
        ContextConflict: If the documents belong to different stories or any
            phase carries diverging outputs.
    """
    if left.story_id != right.story_id:
        raise ContextConflict(
            left.story_id,
            (),
            detail=f"Cannot merge context for story {left.story_id} with context for story {right.story_id}",
        )

    conflicts = find_conflicts(left, right)
    if conflicts:
        logger.warning("Merge conflict for story %s on phase(s) %s", left.story_id, conflicts)
        raise ContextConflict(left.story_id, conflicts)

    outputs = {**left.phase_outputs, **right.phase_outputs}
    merged = ContextDocument(
        story_id=left.story_id,
        completed_phases=(*left.completed_phases, *right.completed_phases),
        phase_outputs=outputs,
    )
    logger.info(
        "Merged context for story %s: completed phases %s",
        merged.story_id,
        list(merged.completed_phases),
    )
    return merged
