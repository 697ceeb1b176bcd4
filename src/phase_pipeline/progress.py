"""Read-only status view over a story's context and plan."""

from __future__ import annotations

from .collaborators import ArtifactProber
from .models import (
    PHASE_COUNT,
    ContextDocument,
    NextAction,
    NextActionKind,
    PhaseProgress,
    PhaseState,
    PlanDocument,
    ProgressView,
)
from .registry import all_definitions
from .resolver import can_run

_STATE_MARKS = {
    PhaseState.DONE: "[x]",
    PhaseState.ACTIVE: "[~]",
    PhaseState.PENDING: "[ ]",
}


def _classify(
    phase_id: int,
    document: ContextDocument,
    plan: PlanDocument,
    prober: ArtifactProber | None,
) -> tuple[PhaseState, list[str]]:
    declared = plan.deliverables_for(phase_id)
    present: list[str] = []
    if prober is not None and declared:
        existing = prober.list_existing_deliverables(phase_id)
        present = [item for item in declared if item in existing]
    if document.is_complete(phase_id):
        # A re-run of a done phase stays done until its new output is committed.
        return PhaseState.DONE, present
    if present:
        return PhaseState.ACTIVE, present
    return PhaseState.PENDING, present


def _next_action(document: ContextDocument, phases: list[PhaseProgress]) -> NextAction:
    active = [entry for entry in phases if entry.state == PhaseState.ACTIVE]
    if active:
        target = max(active, key=lambda entry: entry.phase_id)
        return NextAction(
            kind=NextActionKind.VALIDATE,
            phase_id=target.phase_id,
            message=(
                f"Validate phase {target.phase_id} ({target.title}): "
                f"{len(target.artifacts_present)} of {target.artifacts_expected} deliverables present"
            ),
        )

    pending = [entry for entry in phases if entry.state == PhaseState.PENDING]
    if pending:
        target = min(pending, key=lambda entry: entry.phase_id)
        decision = can_run(target.phase_id, document)
        if decision.runnable:
            return NextAction(
                kind=NextActionKind.RUN,
                phase_id=target.phase_id,
                message=f"Run phase {target.phase_id} ({target.title})",
            )
        return NextAction(
            kind=NextActionKind.BLOCKED,
            phase_id=target.phase_id,
            missing_prerequisites=list(decision.missing_prerequisites),
            message=decision.reason,
        )

    return NextAction(kind=NextActionKind.SHIP, message="All phases complete: ship the story")


def project(
    document: ContextDocument,
    plan: PlanDocument,
    *,
    prober: ArtifactProber | None = None,
) -> ProgressView:
    """Derive per-phase state, completion fraction and the recommended next step.

    Without a prober no phase can be classified as active, since partial
    progress is only visible through artifacts on disk.
    """
    phases: list[PhaseProgress] = []
    for definition in all_definitions():
        state, present = _classify(definition.phase_id, document, plan, prober)
        phases.append(
            PhaseProgress(
                phase_id=definition.phase_id,
                title=definition.title,
                state=state,
                artifacts_present=present,
                artifacts_expected=len(plan.deliverables_for(definition.phase_id)),
            )
        )
    return ProgressView(
        story_id=document.story_id,
        phases=phases,
        completion_fraction=len(document.completed_phases) / PHASE_COUNT,
        next_action=_next_action(document, phases),
    )


def render_progress_markdown(view: ProgressView) -> str:
    lines = [f"# Progress: {view.story_id}", "", f"Completion: {view.completion_fraction:.0%}", ""]
    for entry in view.phases:
        counts = ""
        if entry.artifacts_expected:
            counts = f" ({len(entry.artifacts_present)}/{entry.artifacts_expected} deliverables)"
        lines.append(f"- {_STATE_MARKS[entry.state]} Phase {entry.phase_id}: {entry.title}{counts}")
    lines.extend(["", f"Next: {view.next_action.message}"])
    return "\n".join(lines) + "\n"
