"""Validation gate run before a phase output may be committed."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .collaborators import ArtifactProber, QualityCheckRunner
from .models import PhaseOutput, PlanDocument, ValidationResult
from .registry import ENDPOINT_FIELDS, get_definition

logger = logging.getLogger(__name__)


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def check_deliverables(
    phase_id: int,
    candidate: PhaseOutput,
    plan: PlanDocument,
    prober: ArtifactProber | None = None,
) -> list[str]:
    """Return one itemized reason when any planned deliverable is absent.

    A deliverable counts as present when the candidate lists it and, if a
    prober is supplied, the prober also reports it as existing and non-empty.
    """
    declared = plan.deliverables_for(phase_id)
    if not declared:
        return []
    present = set(candidate.deliverables)
    if prober is not None:
        present &= prober.list_existing_deliverables(phase_id)
    missing = [item for item in declared if item not in present]
    if not missing:
        return []
    return [f"{len(missing)} of {len(declared)} declared deliverables missing: {', '.join(missing)}"]


def check_output_schema(phase_id: int, candidate: PhaseOutput) -> list[str]:
    definition = get_definition(phase_id)
    failures = [
        f"required field '{name}' missing from phase {phase_id} output"
        for name in definition.output_schema
        if name not in candidate or _is_missing(candidate.get(name))
    ]
    for name in sorted(ENDPOINT_FIELDS & set(definition.output_schema)):
        if name not in candidate or _is_missing(candidate.get(name)):
            continue
        try:
            candidate.endpoints(name)
        except (ValidationError, ValueError) as exc:
            failures.append(f"field '{name}' has malformed endpoint descriptors: {_first_line(exc)}")
    return failures


def _first_line(exc: Exception) -> str:
    return str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__


def check_quality(phase_id: int, quality_checks: QualityCheckRunner | None) -> list[str]:
    if quality_checks is None:
        return []
    report = quality_checks.run_checks(phase_id)
    if report.passed:
        return []
    reasons = report.reasons or ["quality checks failed without a reason"]
    return [f"quality check: {reason}" for reason in reasons]


def validate(
    phase_id: object,
    candidate: PhaseOutput,
    plan: PlanDocument,
    *,
    prober: ArtifactProber | None = None,
    quality_checks: QualityCheckRunner | None = None,
) -> ValidationResult:
    """Check a candidate phase output against the plan, the schema and quality checks.

    Each check contributes its own failure reasons; the result passes only
    when none of them reported anything. Nothing is persisted or mutated.

    Raises:
        UnknownPhase: If *phase_id* is not an integer 1-7.
        PhaseExecutionAborted: If the quality-check runner was cancelled.
    """
    definition = get_definition(phase_id)
    failures: list[str] = []
    failures.extend(check_deliverables(definition.phase_id, candidate, plan, prober))
    failures.extend(check_output_schema(definition.phase_id, candidate))
    failures.extend(check_quality(definition.phase_id, quality_checks))

    result = ValidationResult.from_failures(definition.phase_id, failures)
    if not result.passed:
        logger.info("Phase %s validation failed: %s", definition.phase_id, "; ".join(failures))
    return result
