from __future__ import annotations

from typing import Any, Callable, Iterable

import pytest

from phase_pipeline.merger import commit
from phase_pipeline.models import ContextDocument, PhaseOutput, PlanDocument, PlanPhase
from phase_pipeline.registry import get_definition

TODO_DELIVERABLES: dict[int, list[str]] = {
    1: [
        "apps/web/src/components/TodoForm.tsx",
        "apps/web/src/components/TodoItem.tsx",
        "apps/web/src/components/TodoList.tsx",
        "apps/web/src/components/__tests__/TodoForm.test.tsx",
        "apps/web/src/components/__tests__/TodoItem.test.tsx",
        "apps/web/src/components/__tests__/TodoList.test.tsx",
    ],
    2: [
        "libs/shared/src/types/todo.ts",
        "apps/web/src/lib/api/todos.ts",
        "apps/web/src/mocks/handlers/todos.ts",
    ],
    3: [
        "apps/web/src/app/todos/page.tsx",
        "apps/web/src/stores/todo-store.ts",
    ],
    4: [
        "apps/api/src/modules/todos/todo.schema.ts",
        "apps/api/src/modules/todos/todo.repository.ts",
    ],
    5: [
        "apps/api/src/modules/todos/todo.service.ts",
        "apps/api/src/modules/todos/__tests__/todo.service.spec.ts",
    ],
    6: [
        "apps/api/src/modules/todos/todo.controller.ts",
        "apps/api/src/modules/todos/todo.module.ts",
    ],
    7: ["apps/api/src/modules/todos/__tests__/todo.e2e.spec.ts"],
}

TODO_ENDPOINTS: list[dict[str, Any]] = [
    {"method": "GET", "path": "/api/todos", "response": "TodoListResponse"},
    {"method": "POST", "path": "/api/todos", "request": "CreateTodoRequest", "response": "Todo"},
    {"method": "PATCH", "path": "/api/todos/:id", "request": "UpdateTodoRequest", "response": "Todo"},
    {"method": "DELETE", "path": "/api/todos/:id"},
]

OutputFactory = Callable[..., PhaseOutput]
DocumentBuilder = Callable[..., ContextDocument]


def _field_value(name: str) -> Any:
    if name == "endpoints":
        return [dict(item) for item in TODO_ENDPOINTS]
    return [f"{name}:todo"]


@pytest.fixture
def todo_plan() -> PlanDocument:
    return PlanDocument(
        story_id="US-001",
        phases={phase_id: PlanPhase(deliverables=items) for phase_id, items in TODO_DELIVERABLES.items()},
    )


@pytest.fixture
def make_output() -> OutputFactory:
    """Build a schema-complete output for a phase, listing every planned deliverable by default."""

    def factory(phase_id: int, *, deliverables: Iterable[str] | None = None, **overrides: Any) -> PhaseOutput:
        payload: dict[str, Any] = {name: _field_value(name) for name in get_definition(phase_id).output_schema}
        payload["deliverables"] = list(deliverables) if deliverables is not None else list(TODO_DELIVERABLES[phase_id])
        for key, value in overrides.items():
            if value is None:
                payload.pop(key, None)
            else:
                payload[key] = value
        return PhaseOutput(payload)

    return factory


@pytest.fixture
def build_document(make_output: OutputFactory) -> DocumentBuilder:
    """Commit the given phases in ascending order onto an empty document."""

    def builder(phases: Iterable[int], *, story_id: str = "US-001") -> ContextDocument:
        document = ContextDocument.empty(story_id)
        for phase_id in sorted(phases):
            document = commit(document, phase_id, make_output(phase_id))
        return document

    return builder
