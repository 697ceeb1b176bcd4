from __future__ import annotations

import math
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, computed_field, field_validator, model_validator

from .canonical import to_canonical_json
from .errors import PhaseExecutionAborted, PrerequisiteViolation, ValidationFailed, format_blocked_reason

MIN_PHASE_ID = 1
MAX_PHASE_ID = 7
PHASE_COUNT = MAX_PHASE_ID - MIN_PHASE_ID + 1
# currentPhase value once every phase is complete.
ALL_PHASES_DONE = MAX_PHASE_ID + 1

DELIVERABLES_KEY = "deliverables"
HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
# Largest integer magnitude canonical JSON (I-JSON) can represent exactly.
MAX_SAFE_INTEGER = 2**53 - 1


def _check_phase_range(phase_id: int, location: str) -> int:
    if isinstance(phase_id, bool) or not MIN_PHASE_ID <= phase_id <= MAX_PHASE_ID:
        raise ValueError(f"{location} contains phase id {phase_id!r} outside {MIN_PHASE_ID}-{MAX_PHASE_ID}")
    return phase_id


def _check_json_number(value: Any, location: str) -> None:
    """Reject numbers that cannot survive a canonical JSON round trip."""
    if isinstance(value, bool):
        return
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            raise ValueError(f"{location} holds integer {value} beyond the JSON safe range")
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{location} holds non-finite number {value!r}")
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_json_number(item, f"{location}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _check_json_number(item, f"{location}[{index}]")


class Track(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    INTEGRATION = "integration"


class PhaseState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"


class NextActionKind(str, Enum):
    VALIDATE = "validate"
    RUN = "run"
    BLOCKED = "blocked"
    SHIP = "ship"


class PhaseRunOutcome(str, Enum):
    COMMITTED = "committed"
    BLOCKED = "blocked"
    VALIDATION_FAILED = "validation_failed"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Phase definitions and outputs
# ---------------------------------------------------------------------------


class PhaseDefinition(BaseModel):
    """Static description of one pipeline phase."""

    model_config = ConfigDict(frozen=True)

    phase_id: int = Field(ge=MIN_PHASE_ID, le=MAX_PHASE_ID)
    title: str = Field(min_length=1)
    slug: str = Field(min_length=1, pattern=r"^[a-z0-9-]+$")
    track: Track
    prerequisites: frozenset[int] = Field(default_factory=frozenset)
    output_schema: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _prerequisites_precede_phase(self) -> "PhaseDefinition":
        later = sorted(dep for dep in self.prerequisites if dep >= self.phase_id)
        if later:
            raise ValueError(f"phase {self.phase_id} prerequisites must precede it, got {later}")
        if DELIVERABLES_KEY in self.output_schema:
            raise ValueError(f"'{DELIVERABLES_KEY}' is reserved and cannot appear in output_schema")
        return self


class EndpointDescriptor(BaseModel):
    """One HTTP endpoint declared by the API client or controller phases."""

    model_config = ConfigDict(extra="allow", frozen=True)

    method: str
    path: str
    request: str | None = None
    response: str | None = None

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        method = value.strip().upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method {value!r}")
        return method

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"endpoint path must start with '/', got {value!r}")
        return value


OutputValue = Union[str, bool, int, float, list[str], list[dict[str, Any]], dict[str, Any]]


class PhaseOutput(RootModel[dict[str, OutputValue]]):
    """Fields produced by one completed phase run.

    The reserved ``deliverables`` key lists the artifact identifiers the run
    produced; every other key is a phase-specific field.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    @field_validator("root")
    @classmethod
    def _deliverables_are_names(cls, value: dict[str, OutputValue]) -> dict[str, OutputValue]:
        deliverables = value.get(DELIVERABLES_KEY)
        if deliverables is None:
            return value
        if not isinstance(deliverables, list) or not all(isinstance(item, str) for item in deliverables):
            raise ValueError(f"'{DELIVERABLES_KEY}' must be a list of artifact identifiers")
        return value

    @field_validator("root")
    @classmethod
    def _numbers_fit_json(cls, value: dict[str, OutputValue]) -> dict[str, OutputValue]:
        for key, item in value.items():
            _check_json_number(item, key)
        return value

    def __getitem__(self, key: str) -> OutputValue:
        return self.root[key]

    def __contains__(self, key: object) -> bool:
        return key in self.root

    def get(self, key: str, default: Any = None) -> Any:
        return self.root.get(key, default)

    @property
    def deliverables(self) -> list[str]:
        return list(self.root.get(DELIVERABLES_KEY, []))

    @property
    def phase_fields(self) -> dict[str, OutputValue]:
        return {key: value for key, value in self.root.items() if key != DELIVERABLES_KEY}

    def endpoints(self, key: str = "endpoints") -> list[EndpointDescriptor]:
        raw = self.root.get(key, [])
        if not isinstance(raw, list):
            raise ValueError(f"'{key}' must be a list of endpoint descriptors")
        return [EndpointDescriptor.model_validate(item) for item in raw]

    def canonical(self) -> str:
        return to_canonical_json(self.root)


# ---------------------------------------------------------------------------
# Context document
# ---------------------------------------------------------------------------


class ContextDocument(BaseModel):
    """Per-story aggregate: completed phases and their committed outputs.

    Instances are immutable; the merger always returns a new document.
    ``currentPhase`` is derived from the completed set and never read back
    from persisted JSON.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    story_id: str = Field(alias="storyId", min_length=1)
    completed_phases: tuple[int, ...] = Field(default=(), alias="completedPhases")
    phase_outputs: dict[int, PhaseOutput] = Field(default_factory=dict, alias="phaseOutputs")

    @field_validator("story_id")
    @classmethod
    def _story_id_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("storyId must be non-empty")
        return stripped

    @field_validator("completed_phases")
    @classmethod
    def _sorted_unique_phases(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for phase_id in value:
            _check_phase_range(phase_id, "completedPhases")
        return tuple(sorted(set(value)))

    @field_validator("phase_outputs")
    @classmethod
    def _output_keys_in_range(cls, value: dict[int, PhaseOutput]) -> dict[int, PhaseOutput]:
        for phase_id in value:
            _check_phase_range(phase_id, "phaseOutputs")
        return dict(sorted(value.items()))

    @model_validator(mode="after")
    def _enforce_invariants(self) -> "ContextDocument":
        orphaned = sorted(set(self.phase_outputs) - set(self.completed_phases))
        if orphaned:
            raise ValueError(f"phaseOutputs present for phases not marked complete: {orphaned}")
        # Imported lazily: the registry builds PhaseDefinition instances from this module.
        from .registry import assert_prerequisite_closure

        assert_prerequisite_closure(self.completed_phases)
        return self

    @computed_field(alias="currentPhase")  # type: ignore[prop-decorator]
    @property
    def current_phase(self) -> int:
        if not self.completed_phases:
            return MIN_PHASE_ID
        return min(max(self.completed_phases) + 1, ALL_PHASES_DONE)

    @classmethod
    def empty(cls, story_id: str) -> "ContextDocument":
        return cls(story_id=story_id)

    @property
    def completed(self) -> frozenset[int]:
        return frozenset(self.completed_phases)

    @property
    def all_done(self) -> bool:
        return len(self.completed_phases) == PHASE_COUNT

    def is_complete(self, phase_id: int) -> bool:
        return phase_id in self.completed_phases

    def output_for(self, phase_id: int) -> PhaseOutput | None:
        return self.phase_outputs.get(phase_id)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


# ---------------------------------------------------------------------------
# Plan document
# ---------------------------------------------------------------------------


class PlanPhase(BaseModel):
    """Deliverables one phase is expected to produce."""

    deliverables: list[str] = Field(default_factory=list)
    expected_count: int | None = Field(default=None, alias="expectedCount", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("deliverables")
    @classmethod
    def _clean_deliverables(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("deliverable identifiers must be non-empty")
        duplicates = sorted({item for item in cleaned if cleaned.count(item) > 1})
        if duplicates:
            raise ValueError(f"duplicate deliverables: {', '.join(duplicates)}")
        return cleaned

    @model_validator(mode="after")
    def _count_matches_list(self) -> "PlanPhase":
        if self.expected_count is None:
            self.expected_count = len(self.deliverables)
        elif self.expected_count != len(self.deliverables):
            raise ValueError(
                f"expectedCount {self.expected_count} disagrees with {len(self.deliverables)} listed deliverables"
            )
        return self


class PlanDocument(BaseModel):
    """Per-story plan produced by planning tooling; read-only here."""

    model_config = ConfigDict(populate_by_name=True)

    story_id: str = Field(alias="storyId", min_length=1)
    phases: dict[int, PlanPhase] = Field(default_factory=dict)

    @field_validator("phases")
    @classmethod
    def _phase_keys_in_range(cls, value: dict[int, PlanPhase]) -> dict[int, PlanPhase]:
        for phase_id in value:
            _check_phase_range(phase_id, "phases")
        return dict(sorted(value.items()))

    def deliverables_for(self, phase_id: int) -> list[str]:
        plan_phase = self.phases.get(phase_id)
        return list(plan_phase.deliverables) if plan_phase is not None else []


# ---------------------------------------------------------------------------
# Decisions and results
# ---------------------------------------------------------------------------


class RunDecision(BaseModel):
    """Outcome of the dependency resolver: runnable, or blocked on prerequisites."""

    model_config = ConfigDict(frozen=True)

    phase_id: int
    missing_prerequisites: tuple[int, ...] = ()

    @classmethod
    def runnable_now(cls, phase_id: int) -> "RunDecision":
        return cls(phase_id=phase_id)

    @classmethod
    def blocked(cls, phase_id: int, missing: set[int] | frozenset[int]) -> "RunDecision":
        return cls(phase_id=phase_id, missing_prerequisites=tuple(sorted(missing)))

    @property
    def runnable(self) -> bool:
        return not self.missing_prerequisites

    @property
    def reason(self) -> str:
        if self.runnable:
            return f"Phase {self.phase_id} runnable: all prerequisites complete"
        return format_blocked_reason(self.phase_id, self.missing_prerequisites)


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase_id: int
    passed: bool
    failures: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _passed_iff_no_failures(self) -> "ValidationResult":
        if self.passed == bool(self.failures):
            raise ValueError("passed must be true exactly when failures is empty")
        return self

    @classmethod
    def from_failures(cls, phase_id: int, failures: list[str]) -> "ValidationResult":
        return cls(phase_id=phase_id, passed=not failures, failures=list(failures))


class QualityCheckReport(BaseModel):
    """Build/lint/test verdict from the quality-check collaborator."""

    passed: bool
    reasons: list[str] = Field(default_factory=list)


class NextAction(BaseModel):
    kind: NextActionKind
    phase_id: int | None = None
    missing_prerequisites: list[int] = Field(default_factory=list)
    message: str


class PhaseProgress(BaseModel):
    phase_id: int
    title: str
    state: PhaseState
    artifacts_present: list[str] = Field(default_factory=list)
    artifacts_expected: int = 0


class ProgressView(BaseModel):
    story_id: str
    phases: list[PhaseProgress]
    completion_fraction: float
    next_action: NextAction

    def state_of(self, phase_id: int) -> PhaseState:
        for entry in self.phases:
            if entry.phase_id == phase_id:
                return entry.state
        raise KeyError(phase_id)


class PhaseRunResult(BaseModel):
    """Outcome of one orchestrated phase run."""

    story_id: str
    phase_id: int
    outcome: PhaseRunOutcome
    decision: RunDecision | None = None
    validation: ValidationResult | None = None
    document: ContextDocument | None = None
    message: str = ""

    @property
    def committed(self) -> bool:
        return self.outcome == PhaseRunOutcome.COMMITTED

    def raise_for_outcome(self) -> None:
        """Raise the typed error matching a non-committed outcome."""
        if self.outcome == PhaseRunOutcome.BLOCKED and self.decision is not None:
            raise PrerequisiteViolation(self.phase_id, self.decision.missing_prerequisites)
        if self.outcome == PhaseRunOutcome.VALIDATION_FAILED and self.validation is not None:
            raise ValidationFailed(self.validation)
        if self.outcome == PhaseRunOutcome.ABORTED:
            raise PhaseExecutionAborted(self.phase_id, self.message or "cancelled")
