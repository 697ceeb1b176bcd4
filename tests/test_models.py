from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from phase_pipeline.errors import PrerequisiteViolation
from phase_pipeline.models import (
    ALL_PHASES_DONE,
    ContextDocument,
    EndpointDescriptor,
    PhaseOutput,
    PlanDocument,
    PlanPhase,
    ValidationResult,
)


def test_context_document_serializes_with_camel_case_shape(build_document) -> None:
    document = build_document([1, 2])
    payload = json.loads(document.to_json())

    assert payload["storyId"] == "US-001"
    assert payload["completedPhases"] == [1, 2]
    assert payload["currentPhase"] == 3
    assert set(payload["phaseOutputs"]) == {"1", "2"}
    assert payload["phaseOutputs"]["2"]["endpoints"][0]["path"] == "/api/todos"


def test_context_document_json_round_trip(build_document) -> None:
    document = build_document([1, 2, 4])
    assert ContextDocument.model_validate_json(document.to_json()) == document


def test_current_phase_is_derived_not_read_back() -> None:
    document = ContextDocument.model_validate(
        {"storyId": "US-002", "completedPhases": [1], "currentPhase": 6, "phaseOutputs": {}}
    )
    assert document.current_phase == 2


def test_current_phase_for_empty_and_finished_documents(build_document) -> None:
    assert ContextDocument.empty("US-003").current_phase == 1
    assert build_document(range(1, 8)).current_phase == ALL_PHASES_DONE


def test_current_phase_follows_highest_completed_phase(build_document) -> None:
    # Phase 3 is still open but the backend track has moved ahead.
    assert build_document([1, 2, 4]).current_phase == 5


def test_completed_phases_are_sorted_and_deduplicated() -> None:
    document = ContextDocument(story_id="US-004", completed_phases=(2, 1, 2))
    assert document.completed_phases == (1, 2)


def test_document_rejects_missing_prerequisite() -> None:
    with pytest.raises(PrerequisiteViolation, match="Phase 3 blocked: prerequisite phase 2 not complete"):
        ContextDocument(story_id="US-005", completed_phases=(1, 3))


def test_document_rejects_out_of_range_phase() -> None:
    with pytest.raises(ValidationError):
        ContextDocument(story_id="US-006", completed_phases=(8,))


def test_document_rejects_outputs_for_incomplete_phases() -> None:
    with pytest.raises(ValidationError, match="not marked complete"):
        ContextDocument.model_validate({"storyId": "US-007", "completedPhases": [], "phaseOutputs": {"1": {}}})


def test_document_rejects_blank_story_id() -> None:
    with pytest.raises(ValidationError):
        ContextDocument(story_id="   ")


def test_document_is_immutable() -> None:
    document = ContextDocument.empty("US-008")
    with pytest.raises(ValidationError):
        document.story_id = "US-009"  # type: ignore[misc]


def test_phase_output_separates_deliverables_from_fields() -> None:
    output = PhaseOutput({"components": ["TodoForm"], "deliverables": ["TodoForm.tsx"]})
    assert output.deliverables == ["TodoForm.tsx"]
    assert output.phase_fields == {"components": ["TodoForm"]}
    assert "components" in output
    assert output["components"] == ["TodoForm"]


def test_phase_output_rejects_non_list_deliverables() -> None:
    with pytest.raises(ValidationError, match="deliverables"):
        PhaseOutput({"deliverables": "TodoForm.tsx"})


@pytest.mark.parametrize(
    "fields",
    [
        {"count": 2**60},
        {"count": -(2**53)},
        {"score": float("nan")},
        {"score": float("-inf")},
        {"stats": {"rows": 2**53}},
        {"rows": [{"id": 2**60}]},
    ],
)
def test_phase_output_rejects_numbers_without_canonical_form(fields: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        PhaseOutput(fields)


@pytest.mark.parametrize("raw", ['{"score": NaN}', '{"score": Infinity}', '{"count": 1152921504606846976}'])
def test_phase_output_json_rejects_numbers_without_canonical_form(raw: str) -> None:
    with pytest.raises(ValidationError):
        PhaseOutput.model_validate_json(raw)


def test_phase_output_accepts_largest_safe_integer() -> None:
    output = PhaseOutput({"count": 2**53 - 1, "ratio": 0.5, "done": True})
    assert json.loads(output.canonical()) == {"count": 2**53 - 1, "done": True, "ratio": 0.5}


def test_phase_output_canonical_ignores_key_order() -> None:
    left = PhaseOutput({"a": "1", "b": ["x", "y"]})
    right = PhaseOutput({"b": ["x", "y"], "a": "1"})
    assert left.canonical() == right.canonical()


def test_endpoint_descriptor_normalizes_method_and_keeps_extras() -> None:
    endpoint = EndpointDescriptor.model_validate({"method": "patch", "path": "/api/todos/:id", "auth": "none"})
    assert endpoint.method == "PATCH"
    assert endpoint.model_extra == {"auth": "none"}


def test_endpoint_descriptor_rejects_relative_path() -> None:
    with pytest.raises(ValidationError):
        EndpointDescriptor(method="GET", path="api/todos")


def test_plan_phase_defaults_expected_count() -> None:
    plan_phase = PlanPhase(deliverables=["a.ts", "b.ts"])
    assert plan_phase.expected_count == 2


def test_plan_phase_rejects_count_mismatch_and_duplicates() -> None:
    with pytest.raises(ValidationError, match="disagrees"):
        PlanPhase.model_validate({"deliverables": ["a.ts"], "expectedCount": 3})
    with pytest.raises(ValidationError, match="duplicate"):
        PlanPhase(deliverables=["a.ts", "a.ts"])


def test_plan_document_returns_empty_list_for_unplanned_phase() -> None:
    plan = PlanDocument.model_validate({"storyId": "US-010", "phases": {"1": {"deliverables": ["a.ts"]}}})
    assert plan.deliverables_for(1) == ["a.ts"]
    assert plan.deliverables_for(5) == []


def test_validation_result_passed_must_match_failures() -> None:
    with pytest.raises(ValidationError):
        ValidationResult(phase_id=1, passed=True, failures=["missing"])
    with pytest.raises(ValidationError):
        ValidationResult(phase_id=1, passed=False, failures=[])
    assert ValidationResult.from_failures(1, []).passed is True
