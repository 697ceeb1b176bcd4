from importlib.metadata import version

from .canonical import content_version, to_canonical_json
from .collaborators import (
    ArtifactProber,
    CommandQualityCheckRunner,
    FilesystemArtifactProber,
    JsonPlanProvider,
    NullQualityCheckRunner,
    PhaseExecutor,
    PlanProvider,
    QualityCheckRunner,
    StaticPlanProvider,
)
from .errors import (
    ContextConflict,
    PhaseExecutionAborted,
    PipelineError,
    PlanNotFound,
    PrerequisiteViolation,
    StaleWrite,
    UnknownPhase,
    ValidationFailed,
)
from .merger import commit, merge_documents
from .models import (
    ALL_PHASES_DONE,
    ContextDocument,
    EndpointDescriptor,
    NextAction,
    NextActionKind,
    PhaseDefinition,
    PhaseOutput,
    PhaseProgress,
    PhaseRunOutcome,
    PhaseRunResult,
    PhaseState,
    PlanDocument,
    PlanPhase,
    ProgressView,
    QualityCheckReport,
    RunDecision,
    Track,
    ValidationResult,
)
from .orchestrator import PhaseOrchestrator, commit_with_retry, merge_with_retry
from .progress import project, render_progress_markdown
from .registry import PHASE_DEFINITIONS, all_definitions, get_definition
from .resolver import can_run
from .settings import RuntimeSettings
from .state_store import ContextStore, VersionedDocument
from .validation import validate


def get_version() -> str:
    try:
        return version("phase-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "ALL_PHASES_DONE",
    "ArtifactProber",
    "CommandQualityCheckRunner",
    "ContextConflict",
    "ContextDocument",
    "ContextStore",
    "EndpointDescriptor",
    "FilesystemArtifactProber",
    "JsonPlanProvider",
    "NextAction",
    "NextActionKind",
    "NullQualityCheckRunner",
    "PHASE_DEFINITIONS",
    "PhaseDefinition",
    "PhaseExecutionAborted",
    "PhaseExecutor",
    "PhaseOrchestrator",
    "PhaseOutput",
    "PhaseProgress",
    "PhaseRunOutcome",
    "PhaseRunResult",
    "PhaseState",
    "PipelineError",
    "PlanDocument",
    "PlanNotFound",
    "PlanPhase",
    "PlanProvider",
    "PrerequisiteViolation",
    "ProgressView",
    "QualityCheckReport",
    "QualityCheckRunner",
    "RunDecision",
    "RuntimeSettings",
    "StaleWrite",
    "StaticPlanProvider",
    "Track",
    "UnknownPhase",
    "ValidationFailed",
    "ValidationResult",
    "VersionedDocument",
    "all_definitions",
    "can_run",
    "commit",
    "commit_with_retry",
    "content_version",
    "get_definition",
    "get_version",
    "merge_documents",
    "merge_with_retry",
    "project",
    "render_progress_markdown",
    "to_canonical_json",
    "validate",
]
