"""Entry point for `python -m phase_pipeline` and the `phase-pipeline` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from phase_pipeline import PhaseOrchestrator
from phase_pipeline.errors import (
    ContextConflict,
    PhaseExecutionAborted,
    PlanNotFound,
    PrerequisiteViolation,
    StaleWrite,
    UnknownPhase,
    ValidationFailed,
)
from phase_pipeline.models import ContextDocument, PhaseOutput
from phase_pipeline.progress import render_progress_markdown
from phase_pipeline.settings import RuntimeSettings, load_env_file

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2
EXIT_CONFLICT = 3


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Gate, validate and commit delivery pipeline phases")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Directory the context and plan roots are resolved against (default: workspace root or cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    init_cmd = commands.add_parser("init", help="Create an empty context document for a story")
    init_cmd.add_argument("story_id")

    status_cmd = commands.add_parser("status", help="Show per-phase progress and the next action")
    status_cmd.add_argument("story_id")
    status_cmd.add_argument("--markdown", action="store_true", help="Render a markdown status board instead of JSON")

    can_run_cmd = commands.add_parser("can-run", help="Check whether a phase's prerequisites are complete")
    can_run_cmd.add_argument("story_id")
    can_run_cmd.add_argument("phase_id")

    validate_cmd = commands.add_parser("validate", help="Run the validation gate on a candidate phase output")
    validate_cmd.add_argument("story_id")
    validate_cmd.add_argument("phase_id")
    validate_cmd.add_argument("--output", type=Path, required=True, help="JSON file holding the phase output")

    commit_cmd = commands.add_parser("commit", help="Validate and commit a phase output")
    commit_cmd.add_argument("story_id")
    commit_cmd.add_argument("phase_id")
    commit_cmd.add_argument("--output", type=Path, required=True, help="JSON file holding the phase output")
    commit_cmd.add_argument("--skip-validation", action="store_true", help="Commit without running the gate")

    merge_cmd = commands.add_parser("merge", help="Merge a parallel track's context document into the store")
    merge_cmd.add_argument("story_id")
    merge_cmd.add_argument("--other", type=Path, required=True, help="Context document JSON from the other track")

    return parser.parse_args(argv)


def load_phase_output(path: Path) -> PhaseOutput:
    if not path.is_file():
        raise FileNotFoundError(f"Phase output file does not exist: {path}")
    try:
        return PhaseOutput.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Phase output at {path} failed validation: {exc}") from exc


def load_other_document(path: Path, story_id: str) -> ContextDocument:
    if not path.is_file():
        raise FileNotFoundError(f"Context document does not exist: {path}")
    try:
        document = ContextDocument.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Context document at {path} failed validation: {exc}") from exc
    if document.story_id != story_id:
        raise ValueError(f"Context document at {path} belongs to story {document.story_id}, not {story_id}")
    return document


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def run_command(args: argparse.Namespace, orchestrator: PhaseOrchestrator) -> int:
    if args.command == "init":
        created = orchestrator.store.create(args.story_id)
        print(f"created={orchestrator.store.document_path(created.document.story_id)}")
        return EXIT_OK

    if args.command == "status":
        view = orchestrator.status(args.story_id)
        if args.markdown:
            print(render_progress_markdown(view), end="")
        else:
            _print_json(view.model_dump(mode="json"))
        return EXIT_OK

    if args.command == "can-run":
        decision = orchestrator.can_run(args.story_id, args.phase_id)
        print(decision.reason)
        return EXIT_OK if decision.runnable else EXIT_REJECTED

    if args.command == "validate":
        output = load_phase_output(args.output)
        result = orchestrator.validate_output(args.story_id, args.phase_id, output)
        _print_json(result.model_dump(mode="json"))
        return EXIT_OK if result.passed else EXIT_REJECTED

    if args.command == "commit":
        output = load_phase_output(args.output)
        committed = orchestrator.commit_output(
            args.story_id,
            args.phase_id,
            output,
            skip_validation=args.skip_validation,
        )
        print(f"completed_phases={list(committed.document.completed_phases)}")
        print(f"current_phase={committed.document.current_phase}")
        return EXIT_OK

    if args.command == "merge":
        other = load_other_document(args.other, args.story_id)
        merged = orchestrator.merge(other)
        print(f"completed_phases={list(merged.document.completed_phases)}")
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        load_env_file(args.repo_root if args.repo_root is not None else Path.cwd())
        settings = RuntimeSettings.from_env()
        orchestrator = PhaseOrchestrator.from_settings(settings, repo_root=args.repo_root)
        return run_command(args, orchestrator)
    except (PrerequisiteViolation, ValidationFailed, PhaseExecutionAborted) as exc:
        logging.error("%s", exc)
        return EXIT_REJECTED
    except (ContextConflict, StaleWrite) as exc:
        logging.error("%s", exc)
        return EXIT_CONFLICT
    except (UnknownPhase, PlanNotFound, OSError, ValueError) as exc:
        logging.error("%s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
