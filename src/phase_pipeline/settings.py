from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .registry import coerce_phase_id


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    context_root: str = ".phase-context"
    plan_root: str = ".phase-plans"
    workspace_root: str = ""
    commit_max_attempts: int = 3
    quality_check_timeout_seconds: int = 600
    quality_commands: dict[int, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            context_root=os.getenv("PIPELINE_CONTEXT_ROOT", ".phase-context"),
            plan_root=os.getenv("PIPELINE_PLAN_ROOT", ".phase-plans"),
            workspace_root=os.getenv("PIPELINE_WORKSPACE_ROOT", ""),
            commit_max_attempts=_get_env_int("PIPELINE_COMMIT_MAX_ATTEMPTS", default=3, minimum=1, maximum=20),
            quality_check_timeout_seconds=_get_env_int(
                "PIPELINE_QUALITY_CHECK_TIMEOUT", default=600, minimum=1, maximum=86_400
            ),
            quality_commands=_get_env_quality_commands("PIPELINE_QUALITY_COMMANDS_JSON"),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.context_root.strip():
            raise ValueError("PIPELINE_CONTEXT_ROOT must be non-empty")
        if not self.plan_root.strip():
            raise ValueError("PIPELINE_PLAN_ROOT must be non-empty")
        if not 1 <= self.commit_max_attempts <= 20:
            raise ValueError(f"PIPELINE_COMMIT_MAX_ATTEMPTS must be within 1-20, got: {self.commit_max_attempts}")
        if self.quality_check_timeout_seconds < 1:
            raise ValueError(
                f"PIPELINE_QUALITY_CHECK_TIMEOUT must be >= 1, got: {self.quality_check_timeout_seconds}"
            )
        return RuntimeSettings(
            context_root=self.context_root.strip(),
            plan_root=self.plan_root.strip(),
            workspace_root=self.workspace_root.strip(),
            commit_max_attempts=self.commit_max_attempts,
            quality_check_timeout_seconds=self.quality_check_timeout_seconds,
            quality_commands={
                coerce_phase_id(phase_id): tuple(commands) for phase_id, commands in self.quality_commands.items()
            },
        )

    def context_path(self, repo_root: Path) -> Path:
        path = Path(self.context_root)
        return path if path.is_absolute() else repo_root / path

    def plan_path(self, repo_root: Path) -> Path:
        path = Path(self.plan_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_quality_commands(name: str) -> dict[int, tuple[str, ...]]:
    """Parse a JSON object mapping phase ids to lists of shell commands."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} must be valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"{name} must be a JSON object of phase id -> command list")

    commands: dict[int, tuple[str, ...]] = {}
    for key, value in payload.items():
        try:
            phase_id = coerce_phase_id(key)
        except ValueError as exc:
            raise ValueError(f"{name} has invalid phase key {key!r}") from exc
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
            raise ValueError(f"{name} entry for phase {phase_id} must be a list of non-empty commands")
        commands[phase_id] = tuple(item.strip() for item in value)
    return commands


def load_env_file(repo_root: Path) -> bool:
    """Load ``<repo_root>/.env`` into the environment; variables already set win.

    Returns:
        True if a .env file was found and at least one variable was read.
    """
    env_path = repo_root / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path)
