from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import content_version
from .errors import StaleWrite
from .models import ContextDocument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Args:
        path: Filesystem path to read.
        model_name: Human-readable label used in error messages.

    Returns:
        The raw file text.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def _version_of_text(path: Path, text: str) -> str:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"context document at {path} is not valid JSON: {exc}") from exc
    return content_version(payload)


def sanitize_story_id(story_id: str) -> str:
    """Sanitize a story ID for use as a filesystem path component.

    Raises:
        ValueError: If the story ID is empty or contains no safe characters.
    """
    value = story_id.strip()
    if not value:
        raise ValueError("story_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    if not value:
        raise ValueError("story_id contains no filesystem-safe characters")
    return value[:128]


# ---------------------------------------------------------------------------
# ContextStore
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VersionedDocument:
    """A context document together with the version token it was read at.

    ``version`` is ``None`` when no document was persisted for the story yet.
    """

    document: ContextDocument
    version: str | None


class ContextStore:
    """One JSON context document per story, written with compare-and-swap.

    The version token of a persisted document is the sha256 of its RFC 8785
    canonical JSON. ``save`` re-reads the token under an exclusive sidecar
    lock and refuses to write if it differs from the token the caller read.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def document_path(self, story_id: str) -> Path:
        return self.root / f"{sanitize_story_id(story_id)}.json"

    def exists(self, story_id: str) -> bool:
        return self.document_path(story_id).is_file()

    def list_stories(self) -> list[str]:
        """Return the sorted story ids of all persisted documents."""
        stories: list[str] = []
        for path in sorted(self.root.glob("*.json")):
            stories.append(self._read(path).document.story_id)
        return sorted(stories)

    def _read(self, path: Path) -> VersionedDocument:
        text = safe_read_json(path, "context document")
        version = _version_of_text(path, text)
        try:
            document = ContextDocument.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"context document at {path} failed validation: {exc}") from exc
        return VersionedDocument(document=document, version=version)

    def _current_version(self, path: Path) -> str | None:
        if not path.is_file():
            return None
        return _version_of_text(path, safe_read_json(path, "context document"))

    def load_versioned(self, story_id: str) -> VersionedDocument:
        """Read a story's document and the version token to pass to ``save``.

        Raises:
            FileNotFoundError: If no document exists for the story.
            ValueError: If the file is corrupt or fails validation.
            PrerequisiteViolation: If the persisted phases break prerequisite closure.
        """
        path = self.document_path(story_id)
        with _locked_file(path):
            versioned = self._read(path)
        if versioned.document.story_id != story_id.strip():
            raise ValueError(
                f"context document at {path} belongs to story {versioned.document.story_id}, not {story_id}"
            )
        return versioned

    def load(self, story_id: str) -> ContextDocument:
        return self.load_versioned(story_id).document

    def load_or_empty(self, story_id: str) -> VersionedDocument:
        """Like ``load_versioned`` but yields an empty, unversioned document for a new story."""
        if not self.exists(story_id):
            return VersionedDocument(document=ContextDocument.empty(story_id), version=None)
        return self.load_versioned(story_id)

    def save(self, document: ContextDocument, *, expected_version: str | None) -> str:
        """Persist *document* if the stored version still equals *expected_version*.

        Pass ``expected_version=None`` to require that no document exists yet.

        Returns:
            The version token of the newly written document.

        Raises:
            StaleWrite: If another writer changed (or created) the document
                since it was read.
            ValueError: If the document no longer passes validation or has
                no canonical form. Nothing is written in that case.
            PrerequisiteViolation: If the completed phases break prerequisite closure.
        """
        path = self.document_path(document.story_id)
        content = document.to_json()
        # Re-check what will be written; the model tree holds mutable containers.
        try:
            ContextDocument.model_validate_json(content)
        except ValidationError as exc:
            raise ValueError(f"refusing to save invalid context for story {document.story_id}: {exc}") from exc
        new_version = _version_of_text(path, content)
        with _locked_file(path):
            actual_version = self._current_version(path)
            if actual_version != expected_version:
                logger.warning(
                    "Stale write rejected for story %s (expected %s, found %s)",
                    document.story_id,
                    expected_version,
                    actual_version,
                )
                raise StaleWrite(document.story_id, expected_version, actual_version)
            _atomic_write_text(path, content)
        logger.debug("Saved context for story %s at version %s", document.story_id, new_version)
        return new_version

    def create(self, story_id: str) -> VersionedDocument:
        """Persist an empty document for a new story.

        Raises:
            StaleWrite: If a document already exists for the story.
        """
        document = ContextDocument.empty(story_id)
        version = self.save(document, expected_version=None)
        logger.info("Created context document for story %s", document.story_id)
        return VersionedDocument(document=document, version=version)
