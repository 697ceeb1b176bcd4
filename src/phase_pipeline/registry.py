"""Static table of the seven delivery phases.

The set is closed: phases are looked up by id and never registered at
runtime. Phase 4 depends on phase 2 only, so backend work can proceed from
the API contract while the frontend wiring (phase 3) runs on another track.
"""

from __future__ import annotations

from typing import Iterable

from .errors import PrerequisiteViolation, UnknownPhase
from .models import MAX_PHASE_ID, MIN_PHASE_ID, PhaseDefinition, Track

PHASE_DEFINITIONS: tuple[PhaseDefinition, ...] = (
    PhaseDefinition(
        phase_id=1,
        title="UI Components",
        slug="ui-components",
        track=Track.FRONTEND,
        prerequisites=frozenset(),
        output_schema=("components", "mockHandlers"),
    ),
    PhaseDefinition(
        phase_id=2,
        title="API Client",
        slug="api-client",
        track=Track.FRONTEND,
        prerequisites=frozenset({1}),
        output_schema=("sharedTypes", "endpoints", "hooks"),
    ),
    PhaseDefinition(
        phase_id=3,
        title="Frontend Wiring",
        slug="frontend-wiring",
        track=Track.FRONTEND,
        prerequisites=frozenset({1, 2}),
        output_schema=("pages", "stores"),
    ),
    PhaseDefinition(
        phase_id=4,
        title="Repository",
        slug="repository",
        track=Track.BACKEND,
        prerequisites=frozenset({2}),
        output_schema=("schema", "repository"),
    ),
    PhaseDefinition(
        phase_id=5,
        title="Service",
        slug="service",
        track=Track.BACKEND,
        prerequisites=frozenset({4}),
        output_schema=("service", "businessRules"),
    ),
    PhaseDefinition(
        phase_id=6,
        title="Controller",
        slug="controller",
        track=Track.BACKEND,
        prerequisites=frozenset({5}),
        output_schema=("controller", "endpoints"),
    ),
    PhaseDefinition(
        phase_id=7,
        title="Integration",
        slug="integration",
        track=Track.INTEGRATION,
        prerequisites=frozenset({1, 2, 3, 4, 5, 6}),
        output_schema=("integrationTests", "removedMocks"),
    ),
)

_BY_ID: dict[int, PhaseDefinition] = {definition.phase_id: definition for definition in PHASE_DEFINITIONS}

# Fields holding endpoint descriptors that get structural validation.
ENDPOINT_FIELDS: frozenset[str] = frozenset({"endpoints"})


def coerce_phase_id(phase_id: object) -> int:
    """Return *phase_id* as an int in 1-7 or raise ``UnknownPhase``.

    Strings of digits are accepted so CLI arguments and JSON keys can be
    passed through unchanged; booleans are rejected even though they are
    ints in Python.
    """
    if isinstance(phase_id, bool):
        raise UnknownPhase(phase_id)
    if isinstance(phase_id, str):
        stripped = phase_id.strip()
        if not (stripped.isascii() and stripped.isdigit()):
            raise UnknownPhase(phase_id)
        value = int(stripped)
    elif isinstance(phase_id, int):
        value = phase_id
    else:
        raise UnknownPhase(phase_id)
    if not MIN_PHASE_ID <= value <= MAX_PHASE_ID:
        raise UnknownPhase(phase_id)
    return value


def get_definition(phase_id: object) -> PhaseDefinition:
    return _BY_ID[coerce_phase_id(phase_id)]


def all_definitions() -> tuple[PhaseDefinition, ...]:
    """Return every phase definition ordered by ascending id."""
    return PHASE_DEFINITIONS


def phase_ids() -> tuple[int, ...]:
    return tuple(definition.phase_id for definition in PHASE_DEFINITIONS)


def dependents_of(phase_id: object) -> tuple[int, ...]:
    """Return the phases that list *phase_id* as a direct prerequisite."""
    target = coerce_phase_id(phase_id)
    return tuple(definition.phase_id for definition in PHASE_DEFINITIONS if target in definition.prerequisites)


def assert_prerequisite_closure(completed: Iterable[int]) -> None:
    """Raise ``PrerequisiteViolation`` if a completed phase lacks a prerequisite.

    The first offending phase (lowest id) is reported with every prerequisite
    it is missing.
    """
    completed_set = set(completed)
    for phase_id in sorted(completed_set):
        missing = get_definition(phase_id).prerequisites - completed_set
        if missing:
            raise PrerequisiteViolation(phase_id, missing)
