from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, Mapping

import rfc8785
from pydantic import BaseModel

# Values rfc8785 accepts as-is.
_JSON_SCALARS = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce phase records to the JSON primitives rfc8785 understands.

    Models are dumped by alias so the canonical form matches the persisted
    camelCase document. Sets come out sorted; phase-id keys become strings.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, Mapping):
        return {str(key): _normalize_for_jcs(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        value = sorted(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    raise TypeError(f"{type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* as RFC 8785 canonical JSON.

    Used to compare phase outputs written on different tracks and to derive
    the version token of a persisted context document.

    Raises:
        ValueError: If a number falls outside the I-JSON domain (integers
            beyond 2**53 - 1 in magnitude, NaN, infinities).
    """
    try:
        return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")
    except rfc8785.CanonicalizationError as exc:
        raise ValueError(f"value has no canonical JSON form: {exc}") from exc


def content_version(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
