"""
JSON extraction from model output.

Models are asked for bare JSON but routinely wrap it in prose or markdown
fences. `parse_json_object` tries progressively looser extraction tiers and
counts each tier that fails so drift in model behaviour shows up in metrics.
"""

import json
import logging
import re
from collections.abc import Iterator
from typing import Any

from taletree.core.exceptions import ParseError
from taletree.core.metrics import increment_json_parse_failure

logger = logging.getLogger(__name__)

MAX_OBJECT_CANDIDATES = 50
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def _strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences from LLM output."""
    patterns = [
        r"```json\s*\n?(.*?)\n?```",
        r"```\s*\n?(.*?)\n?```",
    ]
    for pattern in patterns:
        match = re.search(pattern, text, re.DOTALL | re.IGNORECASE)
        if match:
            return match.group(1).strip()
    return text


def _clean_json_text(text: str) -> str:
    """Clean common LLM JSON output issues."""
    cleaned = _strip_markdown_fences(text.strip())

    lines = cleaned.split("\n")

    start_idx = 0
    for i, line in enumerate(lines):
        if line.strip().startswith("{"):
            start_idx = i
            break

    end_idx = len(lines) - 1
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].strip().endswith("}"):
            end_idx = i
            break

    cleaned = "\n".join(lines[start_idx : end_idx + 1])
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    return cleaned.strip()


def _extract_json_object(text: str, start: int = 0) -> str | None:
    """Extract the first balanced top-level object at or after `start`."""
    start = text.find("{", start)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text[start:], start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


def _object_candidates(text: str) -> Iterator[str]:
    """Balanced objects starting at each successive `{`, so prose braces are skipped."""
    position = text.find("{")
    tried = 0
    while position != -1 and tried < MAX_OBJECT_CANDIDATES:
        candidate = _extract_json_object(text, position)
        if candidate:
            yield candidate
        tried += 1
        position = text.find("{", position + 1)


def _loads_object(candidate: str) -> dict[str, Any] | None:
    value = json.loads(candidate)
    return value if isinstance(value, dict) else None


def _loads_candidate(candidate: str) -> dict[str, Any] | None:
    for attempt in (candidate, _TRAILING_COMMA.sub(r"\1", candidate)):
        try:
            parsed = _loads_object(attempt)
        except json.JSONDecodeError:
            continue
        if parsed is not None:
            return parsed
    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object found in `text`.

    Raises:
        ParseError: If no tier yields a JSON object.
    """
    if not text or not text.strip():
        increment_json_parse_failure("empty")
        raise ParseError("model returned empty output", detail="empty model output")

    try:
        parsed = _loads_object(text)
        if parsed is not None:
            return parsed
    except json.JSONDecodeError:
        increment_json_parse_failure("direct")

    try:
        parsed = _loads_object(_clean_json_text(text))
        if parsed is not None:
            return parsed
    except json.JSONDecodeError:
        increment_json_parse_failure("cleaned")

    for candidate in _object_candidates(text):
        parsed = _loads_candidate(candidate)
        if parsed is not None:
            return parsed
    increment_json_parse_failure("object")

    logger.warning(
        "json_parse_failed",
        extra={"preview": text[:300]},
    )
    raise ParseError("no JSON object found in model output", detail="unparseable model output")
