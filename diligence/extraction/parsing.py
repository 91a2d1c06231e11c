"""
Synthesis Response Parsing

Every synthesis response is classified into exactly one of three shapes:

    StrictJSON              the whole response is valid JSON
    ExtractedCodeblockJSON  JSON recovered from a fenced block or an embedded span
    OpaqueText              nothing parseable; the text is kept as-is

Callers branch on the type instead of guessing, so a malformed structured
response always ends in a deterministic fallback rather than an exception.

Recovery order for non-strict responses:
1. Fenced code blocks (```json ... ```), first one that parses wins
2. A truncated JSON array, repaired by closing it after its last complete object
3. The first balanced {...} or [...] span that parses
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from config.logging_config import get_logger

logger = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_OPENER_PATTERN = re.compile(r"[{\[]")

# Bounds on the embedded-span scan; each attempt can decode to the end of the text
MAX_EMBEDDED_ATTEMPTS = 256
MAX_EMBEDDED_SCAN_CHARS = 200_000


@dataclass(frozen=True)
class StrictJSON:
    value: Any
    kind: str = "strict_json"


@dataclass(frozen=True)
class ExtractedCodeblockJSON:
    value: Any
    source: str
    kind: str = "extracted_json"


@dataclass(frozen=True)
class OpaqueText:
    text: str
    kind: str = "opaque_text"


ParseResult = Union[StrictJSON, ExtractedCodeblockJSON, OpaqueText]


def parse_synthesis_response(text: Optional[str]) -> ParseResult:
    """
    Classify a synthesis response.

    Example:
        >>> parse_synthesis_response('{"a": 1}')
        StrictJSON(value={'a': 1}, kind='strict_json')
        >>> parse_synthesis_response("no json here").kind
        'opaque_text'
    """
    if text is None or not str(text).strip():
        return OpaqueText(text="")

    text = str(text)
    stripped = text.strip()

    try:
        return StrictJSON(value=json.loads(stripped))
    except json.JSONDecodeError:
        pass

    for block in _FENCE_PATTERN.findall(text):
        block = block.strip()
        if not block:
            continue
        try:
            return ExtractedCodeblockJSON(value=json.loads(block), source=block)
        except json.JSONDecodeError:
            continue

    repaired = _repair_truncated_array(text)
    if repaired is not None:
        return repaired

    embedded = _first_embedded_json(text)
    if embedded is not None:
        return embedded

    logger.debug("Synthesis response is opaque text", extra={"length": len(text)})
    return OpaqueText(text=text)


def _is_structured(value: Any) -> bool:
    """Objects, or non-empty arrays of objects; citation markers like [1] are not."""
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and bool(value) and all(isinstance(item, dict) for item in value)


def _first_embedded_json(text: str) -> Optional[ExtractedCodeblockJSON]:
    """
    First {...} or [...] span that decodes, scanning left to right.

    Only the first MAX_EMBEDDED_SCAN_CHARS characters and MAX_EMBEDDED_ATTEMPTS
    opening brackets are tried.
    """
    decoder = json.JSONDecoder()
    text = text[:MAX_EMBEDDED_SCAN_CHARS]
    for attempt, match in enumerate(_OPENER_PATTERN.finditer(text)):
        if attempt >= MAX_EMBEDDED_ATTEMPTS:
            logger.debug("Embedded JSON scan limit reached", extra={"length": len(text)})
            break
        index = match.start()
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        if _is_structured(value):
            return ExtractedCodeblockJSON(value=value, source=text[index:end])
    return None


def _repair_truncated_array(text: str) -> Optional[ExtractedCodeblockJSON]:
    """
    Recover the complete objects of a JSON array cut off by a token limit.

    Example:
        '[{"a": 1}, {"b": 2}, {"c": 3'  ->  [{"a": 1}, {"b": 2}]
    """
    start = text.find("[")
    if start == -1:
        return None
    candidate = text[start:]

    last_brace = candidate.rfind("}")
    while last_brace > 0:
        attempt = candidate[:last_brace + 1] + "]"
        try:
            value = json.loads(attempt)
        except json.JSONDecodeError:
            last_brace = candidate.rfind("}", 0, last_brace)
            continue
        if _is_structured(value):
            logger.info("Repaired truncated JSON array", extra={"items": len(value)})
            return ExtractedCodeblockJSON(value=value, source=attempt)
        return None
    return None


def json_value(result: ParseResult) -> Optional[Any]:
    """The decoded value for the JSON shapes, None for opaque text."""
    if isinstance(result, (StrictJSON, ExtractedCodeblockJSON)):
        return result.value
    return None


def candidate_records(value: Any) -> List[Dict[str, Any]]:
    """
    Finding-like records from a decoded payload.

    Accepts a list of objects, an object wrapping such a list under a known
    key, or a single finding object.
    """
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        for key in ("findings", "structured_findings", "items", "results"):
            if isinstance(value.get(key), list):
                return [item for item in value[key] if isinstance(item, dict)]
        if "title" in value or "description" in value:
            return [value]
    return []


def section_text(result: ParseResult) -> Optional[str]:
    """
    Prose for a report section.

    Opaque text is the section itself; JSON responses contribute their
    ``content`` (or ``section``/``text``) string.
    """
    if isinstance(result, OpaqueText):
        text = result.text.strip()
        return text or None

    value = result.value
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("content", "section", "text", "summary"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
    return None


__all__ = [
    "StrictJSON",
    "ExtractedCodeblockJSON",
    "OpaqueText",
    "ParseResult",
    "MAX_EMBEDDED_ATTEMPTS",
    "MAX_EMBEDDED_SCAN_CHARS",
    "parse_synthesis_response",
    "json_value",
    "candidate_records",
    "section_text",
]
