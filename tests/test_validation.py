from __future__ import annotations

import logging

import pytest

from phase_pipeline.errors import PhaseExecutionAborted, UnknownPhase
from phase_pipeline.models import PhaseOutput, QualityCheckReport
from phase_pipeline.validation import check_deliverables, check_output_schema, validate

from conftest import TODO_DELIVERABLES


class FakeProber:
    def __init__(self, existing: dict[int, set[str]]) -> None:
        self.existing = existing

    def list_existing_deliverables(self, phase_id: int) -> set[str]:
        return set(self.existing.get(phase_id, set()))


class FakeQualityChecks:
    def __init__(self, report: QualityCheckReport) -> None:
        self.report = report
        self.calls: list[int] = []

    def run_checks(self, phase_id: int) -> QualityCheckReport:
        self.calls.append(phase_id)
        return self.report


class AbortingQualityChecks:
    def run_checks(self, phase_id: int) -> QualityCheckReport:
        raise PhaseExecutionAborted(phase_id, "cancelled by operator")


def test_complete_output_passes(make_output, todo_plan) -> None:
    result = validate(1, make_output(1), todo_plan)
    assert result.passed
    assert result.failures == []


def test_missing_deliverables_are_counted_and_listed(make_output, todo_plan) -> None:
    listed = TODO_DELIVERABLES[1][:4]
    result = validate(1, make_output(1, deliverables=listed), todo_plan)

    assert not result.passed
    assert result.failures == [
        "2 of 6 declared deliverables missing: "
        "apps/web/src/components/__tests__/TodoItem.test.tsx, "
        "apps/web/src/components/__tests__/TodoList.test.tsx"
    ]


def test_prober_must_confirm_listed_deliverables(make_output, todo_plan) -> None:
    prober = FakeProber({1: set(TODO_DELIVERABLES[1][1:])})
    failures = check_deliverables(1, make_output(1), todo_plan, prober)
    assert failures == ["1 of 6 declared deliverables missing: apps/web/src/components/TodoForm.tsx"]


def test_unplanned_phase_has_no_deliverable_requirement(make_output, todo_plan) -> None:
    todo_plan.phases.pop(7)
    assert check_deliverables(7, make_output(7, deliverables=[]), todo_plan) == []


def test_missing_schema_field_is_reported(make_output, todo_plan) -> None:
    result = validate(2, make_output(2, hooks=None), todo_plan)
    assert result.failures == ["required field 'hooks' missing from phase 2 output"]


@pytest.mark.parametrize("blank", ["", "   "])
def test_blank_string_field_counts_as_missing(make_output, blank: str) -> None:
    failures = check_output_schema(4, make_output(4, schema=blank))
    assert failures == ["required field 'schema' missing from phase 4 output"]


def test_empty_list_field_is_present(make_output) -> None:
    assert check_output_schema(7, make_output(7, removedMocks=[])) == []


def test_malformed_endpoints_are_reported(make_output) -> None:
    output = make_output(6, endpoints=[{"method": "FETCH", "path": "/api/todos"}])
    failures = check_output_schema(6, output)
    assert len(failures) == 1
    assert failures[0].startswith("field 'endpoints' has malformed endpoint descriptors")


def test_failures_from_every_check_are_combined(make_output, todo_plan) -> None:
    quality = FakeQualityChecks(QualityCheckReport(passed=False, reasons=["`pnpm lint` exited with 1: no-unused-vars"]))
    candidate = make_output(3, deliverables=TODO_DELIVERABLES[3][:1], stores=None)

    result = validate(3, candidate, todo_plan, quality_checks=quality)

    assert result.failures == [
        "1 of 2 declared deliverables missing: apps/web/src/stores/todo-store.ts",
        "required field 'stores' missing from phase 3 output",
        "quality check: `pnpm lint` exited with 1: no-unused-vars",
    ]
    assert quality.calls == [3]


def test_failed_quality_report_without_reasons_still_fails(make_output, todo_plan) -> None:
    result = validate(5, make_output(5), todo_plan, quality_checks=FakeQualityChecks(QualityCheckReport(passed=False)))
    assert result.failures == ["quality check: quality checks failed without a reason"]


def test_aborted_quality_checks_propagate(make_output, todo_plan) -> None:
    with pytest.raises(PhaseExecutionAborted, match="cancelled by operator"):
        validate(5, make_output(5), todo_plan, quality_checks=AbortingQualityChecks())


def test_unknown_phase_is_rejected(todo_plan) -> None:
    with pytest.raises(UnknownPhase):
        validate(8, PhaseOutput({}), todo_plan)


def test_failed_validation_is_logged(make_output, todo_plan, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="phase_pipeline.validation")
    validate(2, make_output(2, sharedTypes=None), todo_plan)
    assert "Phase 2 validation failed" in caplog.text
