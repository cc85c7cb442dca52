"""ResponseExtractor - recover a typed value from a free-text model response.

Models asked for JSON still wrap it in prose, markdown fences, leave trailing
commas, emit raw newlines inside strings, or stop mid-document. The extractor
runs an explicit pipeline of stages, each one transforming the output of the
previous one, and stops at the first stage whose output both parses and
matches the expected shape:

    direct  -> BOM stripped and trimmed text, as is
    fence   -> body of a single ```json ... ``` (or ``` ... ```) block
    span    -> first greedy {...} / [...] span when prose surrounds the JSON
    repair  -> trailing commas dropped, control characters inside strings
               escaped, truncated documents closed

A stage that does not apply to its input is skipped. If every stage fails, a
caller-supplied fallback template is returned flagged as degraded, otherwise
MalformedResponseError is raised with an excerpt of the raw text.

Shape validation uses pydantic TypeAdapters, so `expected_shape` can be any
type pydantic understands (a BaseModel subclass, `dict[str, Any]`,
`list[str]`, ...).
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from gencache.core.exceptions import MalformedResponseError

logger = structlog.get_logger(__name__)

_BOM = "\ufeff"
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n?([\s\S]*?)```")
_OPEN_FENCE_RE = re.compile(r"^```(?:json|JSON)?[ \t]*\r?\n?")
_SPAN_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")
_CLOSERS = {"{": "}", "[": "]"}
_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


class ResponseFormat(str, Enum):
    """Kind of response requested from the upstream service."""

    JSON = "json"
    TEXT = "text"


@dataclass(frozen=True)
class ExtractionResult:
    """A value recovered from a response.

    Attributes:
        value: The validated value
        strategy: Name of the stage that produced it ("direct", "fence",
            "span", "repair", "text" or "fallback")
        degraded: True when the value came from a fallback template
    """

    value: Any
    strategy: str
    degraded: bool = False


@dataclass(frozen=True)
class FallbackTemplate:
    """Last-resort value for one request type.

    `value` is either the placeholder itself or a callable building it from the
    raw response text. Fallbacks are opt-in per request, never global.
    """

    value: Any
    name: str = "fallback"

    def render(self, raw: str) -> Any:
        return self.value(raw) if callable(self.value) else self.value


@lru_cache(maxsize=256)
def _cached_adapter(shape: Any) -> TypeAdapter[Any]:
    return TypeAdapter(shape)


def shape_adapter(shape: Any) -> TypeAdapter[Any]:
    """Return a (cached) TypeAdapter for `shape`."""
    try:
        return _cached_adapter(shape)
    except TypeError:
        # Unhashable shape objects cannot be cached
        return TypeAdapter(shape)


# -----------------------------------------------------------------------------
# Stages
# -----------------------------------------------------------------------------


def _strip_fence(text: str) -> str | None:
    if "```" not in text:
        return None
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Opening fence without a closing one: truncated output
    if _OPEN_FENCE_RE.match(text):
        return _OPEN_FENCE_RE.sub("", text, count=1).strip()
    return None


def _extract_span(text: str) -> str | None:
    if text.startswith(("{", "[")):
        return None
    match = _SPAN_RE.search(text)
    if match:
        return match.group(1)
    # No closing bracket at all: keep everything from the first opener so
    # the repair stage can close it
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    return text[min(starts):] if starts else None


def _repair(text: str) -> str | None:
    """Fix common syntax slips in one left-to-right scan.

    Returns the first repaired candidate that parses, or the main candidate
    when none does (so the caller reports a parse error on it).
    """
    out: list[str] = []
    stack: list[str] = []
    in_string = False
    escaped = False
    # (position in out, open brackets) of the last comma outside strings,
    # used to drop an incomplete trailing element of a truncated document
    last_comma: tuple[int, list[str]] | None = None

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
                out.append(ch)
            elif ch == "\\":
                escaped = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                out.append(ch)
            elif ch in _STRING_ESCAPES:
                out.append(_STRING_ESCAPES[ch])
            elif ord(ch) < 0x20:
                out.append(f"\\u{ord(ch):04x}")
            else:
                out.append(ch)
            continue

        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]":
            _drop_trailing_comma(out)
            if stack and _CLOSERS[stack[-1]] == ch:
                stack.pop()
        elif ch == ",":
            last_comma = (len(out), list(stack))
        out.append(ch)

    truncated = in_string or bool(stack)
    if not truncated:
        return "".join(out)

    candidates = [_close(out, stack, in_string)]
    if last_comma is not None:
        position, comma_stack = last_comma
        candidates.append(_close(out[:position], comma_stack, False))

    for candidate in candidates:
        try:
            json.loads(candidate)
        except ValueError:
            continue
        return candidate
    return candidates[0]


def _drop_trailing_comma(out: list[str]) -> None:
    i = len(out) - 1
    while i >= 0 and out[i].isspace():
        i -= 1
    if i >= 0 and out[i] == ",":
        del out[i]


def _close(out: list[str], stack: list[str], in_string: bool) -> str:
    body = "".join(out)
    if in_string:
        if body.endswith("\\"):
            body = body[:-1]
        body += '"'
    body = body.rstrip()
    if body.endswith(","):
        body = body[:-1]
    elif body.endswith(":"):
        body += "null"
    return body + "".join(_CLOSERS[opener] for opener in reversed(stack))


_STAGES: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("direct", lambda text: text),
    ("fence", _strip_fence),
    ("span", _extract_span),
    ("repair", _repair),
)


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


class ResponseExtractor:
    """Turn upstream response text into a value of the expected shape.

    Usage:
        ```python
        extractor = ResponseExtractor()
        result = extractor.extract(text, ChapterOverview)
        overview = result.value
        ```
    """

    def extract(
        self,
        text: str,
        expected_shape: Any = Any,
        response_format: ResponseFormat = ResponseFormat.JSON,
        fallback: FallbackTemplate | None = None,
    ) -> ExtractionResult:
        """Extract a value from `text`.

        Args:
            text: Raw upstream response
            expected_shape: Type the value must validate against
            response_format: JSON (run the stage pipeline) or TEXT (trimmed text)
            fallback: Template returned, flagged degraded, if extraction fails

        Returns:
            ExtractionResult with the validated value

        Raises:
            MalformedResponseError: If nothing matches and no fallback is given
        """
        adapter = shape_adapter(expected_shape)
        candidate = (text or "").lstrip(_BOM).strip()

        if response_format is ResponseFormat.TEXT:
            result, reason = self._validate_text(candidate, adapter)
        else:
            result, reason = self._run_stages(candidate, adapter)

        if result is not None:
            logger.debug("response_extracted", strategy=result.strategy)
            return result

        if fallback is not None:
            return self._use_fallback(text, adapter, fallback, reason)

        logger.warning(
            "response_extraction_failed",
            reason=reason,
            excerpt=(text or "")[:200],
        )
        raise MalformedResponseError(text or "", reason=reason)

    def _run_stages(
        self, candidate: str, adapter: TypeAdapter[Any]
    ) -> tuple[ExtractionResult | None, str | None]:
        if not candidate:
            return None, "empty response"

        reason: str | None = None
        for name, stage in _STAGES:
            transformed = stage(candidate)
            if transformed is None:
                continue
            candidate = transformed
            try:
                parsed = json.loads(candidate)
            except ValueError as e:
                reason = f"{name}: {e}"
                continue
            try:
                return ExtractionResult(adapter.validate_python(parsed), name), None
            except ValidationError as e:
                reason = f"{name}: shape mismatch ({e.error_count()} errors)"
        return None, reason

    def _validate_text(
        self, candidate: str, adapter: TypeAdapter[Any]
    ) -> tuple[ExtractionResult | None, str | None]:
        if not candidate:
            return None, "empty response"
        try:
            return ExtractionResult(adapter.validate_python(candidate), "text"), None
        except ValidationError as e:
            return None, f"text: shape mismatch ({e.error_count()} errors)"

    def _use_fallback(
        self,
        raw: str,
        adapter: TypeAdapter[Any],
        fallback: FallbackTemplate,
        reason: str | None,
    ) -> ExtractionResult:
        try:
            value = adapter.validate_python(fallback.render(raw or ""))
        except ValidationError as e:
            raise MalformedResponseError(
                raw or "",
                reason=f"fallback '{fallback.name}' does not match expected shape: {e}",
            ) from e

        logger.warning(
            "generation_parse_degraded",
            fallback=fallback.name,
            reason=reason,
        )
        return ExtractionResult(value, "fallback", degraded=True)


# -----------------------------------------------------------------------------
# Artifact encoding
# -----------------------------------------------------------------------------


def encode_artifact(
    value: Any,
    expected_shape: Any = Any,
    response_format: ResponseFormat = ResponseFormat.JSON,
) -> str:
    """Serialize a validated value into the cache payload string."""
    if response_format is ResponseFormat.TEXT and isinstance(value, str):
        return value
    return shape_adapter(expected_shape).dump_json(value).decode("utf-8")


def decode_artifact(
    payload: str,
    expected_shape: Any = Any,
    response_format: ResponseFormat = ResponseFormat.JSON,
) -> Any:
    """Rebuild a value from a cache payload.

    Raises:
        pydantic.ValidationError: If the payload no longer matches the shape
    """
    adapter = shape_adapter(expected_shape)
    if response_format is ResponseFormat.TEXT:
        return adapter.validate_python(payload)
    return adapter.validate_json(payload)
