from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .collaborators import (
    ArtifactProber,
    CommandQualityCheckRunner,
    FilesystemArtifactProber,
    JsonPlanProvider,
    NullQualityCheckRunner,
    PhaseExecutor,
    PlanProvider,
    QualityCheckRunner,
)
from .errors import PhaseExecutionAborted, StaleWrite, ValidationFailed
from .merger import commit, merge_documents
from .models import (
    ContextDocument,
    PhaseOutput,
    PhaseRunOutcome,
    PhaseRunResult,
    PlanDocument,
    ProgressView,
    RunDecision,
    ValidationResult,
)
from .progress import project
from .registry import coerce_phase_id
from .resolver import can_run
from .settings import RuntimeSettings
from .state_store import ContextStore, VersionedDocument
from .validation import validate

logger = logging.getLogger(__name__)

ProberFactory = Callable[[PlanDocument], ArtifactProber]


def commit_with_retry(
    store: ContextStore,
    story_id: str,
    phase_id: object,
    output: PhaseOutput,
    *,
    max_attempts: int = 3,
) -> VersionedDocument:
    """Read, commit and compare-and-swap save, retrying on ``StaleWrite``.

    Each attempt re-reads the persisted document so prerequisite gating is
    evaluated against the latest state.

    Raises:
        StaleWrite: If every attempt lost the race to a concurrent writer.
        PrerequisiteViolation: If the phase is blocked on the latest document.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")
    attempt = 1
    while True:
        current = store.load_or_empty(story_id)
        updated = commit(current.document, phase_id, output)
        try:
            version = store.save(updated, expected_version=current.version)
        except StaleWrite:
            if attempt >= max_attempts:
                raise
            logger.warning(
                "Commit of phase %s for story %s lost a race (attempt %d/%d)",
                phase_id,
                story_id,
                attempt,
                max_attempts,
            )
            attempt += 1
            continue
        return VersionedDocument(document=updated, version=version)


def merge_with_retry(
    store: ContextStore,
    other: ContextDocument,
    *,
    max_attempts: int = 3,
) -> VersionedDocument:
    """Merge a parallel track's document into the persisted one for the same story.

    Raises:
        ContextConflict: If both tracks wrote a phase differently.
        StaleWrite: If every attempt lost the race to a concurrent writer.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")
    attempt = 1
    while True:
        current = store.load_or_empty(other.story_id)
        merged = merge_documents(current.document, other)
        try:
            version = store.save(merged, expected_version=current.version)
        except StaleWrite:
            if attempt >= max_attempts:
                raise
            logger.warning(
                "Merge for story %s lost a race (attempt %d/%d)", other.story_id, attempt, max_attempts
            )
            attempt += 1
            continue
        return VersionedDocument(document=merged, version=version)


class PhaseRunState(TypedDict, total=False):
    story_id: str
    phase_id: int
    document: ContextDocument
    decision: RunDecision
    plan: PlanDocument
    output: PhaseOutput
    validation: ValidationResult
    outcome: PhaseRunOutcome
    message: str


class PhaseOrchestrator:
    """Phase run as a StateGraph: authorize -> execute -> validate -> commit.

    Blocked, aborted and failed runs end the graph early and leave the stored
    context untouched. Plan lookup failures, merge conflicts and exhausted
    commit retries propagate to the caller.
    """

    def __init__(
        self,
        *,
        store: ContextStore,
        plans: PlanProvider,
        executor: PhaseExecutor | None = None,
        quality_checks: QualityCheckRunner | None = None,
        prober_factory: ProberFactory | None = None,
        commit_max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.plans = plans
        self.executor = executor
        self.quality_checks = quality_checks if quality_checks is not None else NullQualityCheckRunner()
        self.prober_factory = prober_factory
        self.commit_max_attempts = commit_max_attempts
        self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings | None = None,
        *,
        executor: PhaseExecutor | None = None,
        repo_root: Path | None = None,
    ) -> "PhaseOrchestrator":
        settings = settings if settings is not None else RuntimeSettings.from_env()
        root = repo_root if repo_root is not None else settings.workspace_root_path
        workspace = settings.workspace_root_path if settings.workspace_root else root
        quality_checks: QualityCheckRunner = NullQualityCheckRunner()
        if settings.quality_commands:
            quality_checks = CommandQualityCheckRunner(
                settings.quality_commands,
                cwd=workspace,
                timeout_seconds=settings.quality_check_timeout_seconds,
            )
        return cls(
            store=ContextStore(settings.context_path(root)),
            plans=JsonPlanProvider(settings.plan_path(root)),
            executor=executor,
            quality_checks=quality_checks,
            prober_factory=lambda plan: FilesystemArtifactProber(workspace, plan),
            commit_max_attempts=settings.commit_max_attempts,
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PhaseRunState)
        graph.add_node("authorize", self._authorize_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("commit", self._commit_node)

        graph.add_edge(START, "authorize")
        graph.add_conditional_edges("authorize", self._authorize_route, {"execute": "execute", "end": END})
        graph.add_conditional_edges("execute", self._execute_route, {"validate": "validate", "end": END})
        graph.add_conditional_edges("validate", self._validate_route, {"commit": "commit", "end": END})
        graph.add_edge("commit", END)
        return graph

    def _prober_for(self, plan: PlanDocument) -> ArtifactProber | None:
        return self.prober_factory(plan) if self.prober_factory is not None else None

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _authorize_node(self, state: PhaseRunState) -> dict[str, Any]:
        document = self.store.load_or_empty(state["story_id"]).document
        decision = can_run(state["phase_id"], document)
        if not decision.runnable:
            logger.info("Story %s: %s", state["story_id"], decision.reason)
            return {
                "document": document,
                "decision": decision,
                "outcome": PhaseRunOutcome.BLOCKED,
                "message": decision.reason,
            }
        plan = self.plans.get_plan(state["story_id"])
        return {"document": document, "decision": decision, "plan": plan}

    def _authorize_route(self, state: PhaseRunState) -> str:
        return "end" if state.get("outcome") == PhaseRunOutcome.BLOCKED else "execute"

    def _execute_node(self, state: PhaseRunState) -> dict[str, Any]:
        if self.executor is None:
            raise ValueError("PhaseOrchestrator.run_phase requires an executor")
        phase_id = state["phase_id"]
        try:
            output = self.executor.execute(phase_id, state["document"])
        except PhaseExecutionAborted as exc:
            logger.warning("Story %s: %s", state["story_id"], exc)
            return {"outcome": PhaseRunOutcome.ABORTED, "message": exc.reason}
        except (TimeoutError, subprocess.TimeoutExpired) as exc:
            logger.warning("Story %s: phase %s executor timed out: %s", state["story_id"], phase_id, exc)
            return {"outcome": PhaseRunOutcome.ABORTED, "message": f"executor timed out: {exc}"}
        return {"output": output}

    def _execute_route(self, state: PhaseRunState) -> str:
        return "end" if state.get("outcome") == PhaseRunOutcome.ABORTED else "validate"

    def _validate_node(self, state: PhaseRunState) -> dict[str, Any]:
        plan = state["plan"]
        try:
            result = validate(
                state["phase_id"],
                state["output"],
                plan,
                prober=self._prober_for(plan),
                quality_checks=self.quality_checks,
            )
        except PhaseExecutionAborted as exc:
            logger.warning("Story %s: %s", state["story_id"], exc)
            return {"outcome": PhaseRunOutcome.ABORTED, "message": exc.reason}
        if not result.passed:
            return {
                "validation": result,
                "outcome": PhaseRunOutcome.VALIDATION_FAILED,
                "message": "; ".join(result.failures),
            }
        return {"validation": result}

    def _validate_route(self, state: PhaseRunState) -> str:
        return "commit" if state.get("outcome") is None else "end"

    def _commit_node(self, state: PhaseRunState) -> dict[str, Any]:
        committed = commit_with_retry(
            self.store,
            state["story_id"],
            state["phase_id"],
            state["output"],
            max_attempts=self.commit_max_attempts,
        )
        return {
            "document": committed.document,
            "outcome": PhaseRunOutcome.COMMITTED,
            "message": f"Phase {state['phase_id']} committed",
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_phase(self, story_id: str, phase_id: object) -> PhaseRunResult:
        """Authorize, execute, validate and commit one phase for a story.

        Raises:
            UnknownPhase: If *phase_id* is not an integer 1-7.
            PlanNotFound: If the story has no plan.
            StaleWrite: If the commit lost every compare-and-swap attempt.
        """
        initial_state: PhaseRunState = {"story_id": story_id, "phase_id": coerce_phase_id(phase_id)}
        final = self.graph.invoke(initial_state)
        return PhaseRunResult(
            story_id=story_id,
            phase_id=final["phase_id"],
            outcome=final["outcome"],
            decision=final.get("decision"),
            validation=final.get("validation"),
            document=final.get("document"),
            message=final.get("message", ""),
        )

    def can_run(self, story_id: str, phase_id: object) -> RunDecision:
        return can_run(phase_id, self.store.load_or_empty(story_id).document)

    def validate_output(self, story_id: str, phase_id: object, output: PhaseOutput) -> ValidationResult:
        plan = self.plans.get_plan(story_id)
        return validate(
            phase_id,
            output,
            plan,
            prober=self._prober_for(plan),
            quality_checks=self.quality_checks,
        )

    def commit_output(
        self,
        story_id: str,
        phase_id: object,
        output: PhaseOutput,
        *,
        skip_validation: bool = False,
    ) -> VersionedDocument:
        """Validate an externally produced output and commit it with retry.

        Raises:
            ValidationFailed: If the output does not pass the validation gate.
            PrerequisiteViolation: If the phase is blocked.
            StaleWrite: If every compare-and-swap attempt failed.
        """
        target = coerce_phase_id(phase_id)
        if not skip_validation:
            result = self.validate_output(story_id, target, output)
            if not result.passed:
                raise ValidationFailed(result)
        return commit_with_retry(self.store, story_id, target, output, max_attempts=self.commit_max_attempts)

    def merge(self, other: ContextDocument) -> VersionedDocument:
        return merge_with_retry(self.store, other, max_attempts=self.commit_max_attempts)

    def status(self, story_id: str) -> ProgressView:
        plan = self.plans.get_plan(story_id)
        document = self.store.load_or_empty(story_id).document
        return project(document, plan, prober=self._prober_for(plan))
