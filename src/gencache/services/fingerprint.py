"""Deterministic fingerprinting of semantic input.

The fingerprint is the SHA-256 of a canonical JSON serialization: sorted keys,
compact separators, UTF-8, no NaN. Two inputs that are equal as data produce
the same fingerprint whatever their key insertion order.

Equality is judged on the JSON form: a pydantic model and the equivalent dict
share a fingerprint, as do a datetime, UUID or Decimal and its string form.
Mapping keys must be strings, since JSON would otherwise turn `{1: "x"}` into
`{"1": "x"}`.
"""

import dataclasses
import hashlib
import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from gencache.core.exceptions import FingerprintError


def _encode(value: Any) -> Any:
    """Lower a value JSON has no native form for to one it has."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, UUID | Decimal):
        return str(value)
    if isinstance(value, set | frozenset):
        return sorted(value, key=canonical_json)
    raise TypeError(f"Object of type {type(value).__name__} is not serializable")


def _normalize(value: Any) -> Any:
    """Rebuild `value` from JSON-native types only."""
    if isinstance(value, Enum):
        return _normalize(value.value)
    if value is None or isinstance(value, str | bool | int | float):
        return value
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                # json.dumps would stringify it and collide with the str key
                raise FingerprintError(
                    type(key).__name__,
                    message=f"Mapping keys must be strings, got {type(key).__name__}",
                )
            normalized[key] = _normalize(item)
        return normalized
    if isinstance(value, list | tuple):
        return [_normalize(item) for item in value]
    return _normalize(_encode(value))


def canonical_json(value: Any) -> str:
    """Serialize `value` to its canonical JSON text.

    Raises:
        FingerprintError: If the value (or something nested in it) cannot be
            serialized, or contains NaN/Infinity
    """
    try:
        return json.dumps(
            _normalize(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except RecursionError as e:
        raise FingerprintError(
            message="Input is nested too deeply (or contains a cycle)"
        ) from e
    except (TypeError, ValueError) as e:
        raise FingerprintError(message=f"Input cannot be fingerprinted: {e}") from e


def fingerprint(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical form of `value`.

    Example:
        >>> fingerprint({"b": 1, "a": 2}) == fingerprint({"a": 2, "b": 1})
        True
    """
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
