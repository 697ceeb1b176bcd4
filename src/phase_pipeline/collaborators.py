"""Interfaces to the external collaborators and their default adapters.

The orchestrator never generates code, runs builds, or owns plans itself. It
reaches those concerns through the protocols below so that an AI agent, a CI
runner, or a test double can stand behind them.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from pydantic import ValidationError

from .errors import PhaseExecutionAborted, PlanNotFound
from .models import ContextDocument, PhaseOutput, PlanDocument, QualityCheckReport
from .registry import coerce_phase_id
from .state_store import safe_read_json, sanitize_story_id

logger = logging.getLogger(__name__)

# Longest tail of command output folded into a failure reason.
_OUTPUT_TAIL_CHARS = 400


class PlanProvider(Protocol):
    def get_plan(self, story_id: str) -> PlanDocument: ...


class ArtifactProber(Protocol):
    def list_existing_deliverables(self, phase_id: int) -> set[str]: ...


class QualityCheckRunner(Protocol):
    def run_checks(self, phase_id: int) -> QualityCheckReport: ...


class PhaseExecutor(Protocol):
    """Performs a phase (normally an AI agent session) and returns its output.

    Implementations signal cancellation or timeout by raising
    ``PhaseExecutionAborted`` (``TimeoutError`` is converted by the caller).
    """

    def execute(self, phase_id: int, document: ContextDocument) -> PhaseOutput: ...


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class JsonPlanProvider:
    """Reads ``<root>/<storyId>.json`` plan documents."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def plan_path(self, story_id: str) -> Path:
        return self.root / f"{sanitize_story_id(story_id)}.json"

    def get_plan(self, story_id: str) -> PlanDocument:
        """Load and validate the plan for *story_id*.

        Raises:
            PlanNotFound: If the file is missing, unreadable, invalid, or
                belongs to another story. Never defaults to an empty plan.
        """
        path = self.plan_path(story_id)
        try:
            text = safe_read_json(path, "plan document")
        except (FileNotFoundError, ValueError) as exc:
            raise PlanNotFound(story_id, str(exc)) from exc
        try:
            plan = PlanDocument.model_validate_json(text)
        except ValidationError as exc:
            raise PlanNotFound(story_id, f"plan at {path} failed validation: {exc}") from exc
        if plan.story_id != story_id:
            raise PlanNotFound(story_id, f"plan at {path} belongs to story {plan.story_id}")
        return plan


class StaticPlanProvider:
    """In-memory plans keyed by story id."""

    def __init__(self, plans: Sequence[PlanDocument] = ()) -> None:
        self._plans = {plan.story_id: plan for plan in plans}

    def add(self, plan: PlanDocument) -> None:
        self._plans[plan.story_id] = plan

    def get_plan(self, story_id: str) -> PlanDocument:
        try:
            return self._plans[story_id]
        except KeyError:
            raise PlanNotFound(story_id) from None


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


class FilesystemArtifactProber:
    """Reports which of a plan's deliverables exist as non-empty files under *root*."""

    def __init__(self, root: Path, plan: PlanDocument) -> None:
        self.root = root
        self.plan = plan

    def _exists_non_empty(self, deliverable: str) -> bool:
        path = Path(deliverable)
        if not path.is_absolute():
            path = self.root / path
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError as exc:
            logger.warning("Unable to stat deliverable %s: %s", path, exc)
            return False

    def list_existing_deliverables(self, phase_id: int) -> set[str]:
        return {
            deliverable
            for deliverable in self.plan.deliverables_for(coerce_phase_id(phase_id))
            if self._exists_non_empty(deliverable)
        }


# ---------------------------------------------------------------------------
# Quality checks
# ---------------------------------------------------------------------------


class NullQualityCheckRunner:
    """Quality-check runner for phases with no configured checks."""

    def run_checks(self, phase_id: int) -> QualityCheckReport:
        _ = phase_id
        return QualityCheckReport(passed=True)


class CommandQualityCheckRunner:
    """Runs configured build/lint/test shell commands for a phase.

    Each failing command contributes one reason carrying its exit code and the
    tail of its output. A command exceeding *timeout_seconds* aborts the phase.
    """

    def __init__(
        self,
        commands: Mapping[int, Sequence[str]],
        *,
        cwd: Path,
        timeout_seconds: int = 600,
    ) -> None:
        self.commands = {coerce_phase_id(phase_id): list(items) for phase_id, items in commands.items()}
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def run_checks(self, phase_id: int) -> QualityCheckReport:
        reasons: list[str] = []
        for command in self.commands.get(coerce_phase_id(phase_id), []):
            logger.info("Running quality check for phase %s: %s", phase_id, command)
            returncode, output = self._run_command(phase_id, command)
            if returncode != 0:
                tail = output[-_OUTPUT_TAIL_CHARS:] if output else "no output"
                reasons.append(f"`{command}` exited with {returncode}: {tail}")
        return QualityCheckReport(passed=not reasons, reasons=reasons)

    def _run_command(self, phase_id: int, command: str) -> tuple[int, str]:
        # The shell gets its own process group so a timeout also takes down
        # anything it spawned.
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            stdout, stderr = process.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            _kill_process_group(process)
            raise PhaseExecutionAborted(
                phase_id, f"quality check {command!r} timed out after {self.timeout_seconds}s"
            ) from exc
        return process.returncode, (stdout + stderr).strip()


def _kill_process_group(process: subprocess.Popen[str]) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Already exited.
        pass
    process.communicate()
