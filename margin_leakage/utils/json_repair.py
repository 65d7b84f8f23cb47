# margin_leakage/utils/json_repair.py
"""Helpers that coerce free-form model replies into JSON values."""

import json
import re
from typing import Any, Dict, List, Optional

from ..core.exceptions import ResponseParseError

_MISSING = object()

_FENCE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_FENCE_MARKER = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*(?=[}\]])")
_SINGLE_QUOTED = re.compile(r"'([^']*?)'")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z0-9_@$\-]+)\s*:")
_OBJECT_RUN = re.compile(r"\{[\s\S]*?\}(?=\s*\{|\s*$)")
_GREEDY_OBJECT = re.compile(r"\{[\s\S]*\}")


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return _MISSING


def strip_code_fences(text: Optional[str]) -> str:
    """Return the body of the first fenced block, or the text without fence markers."""
    t = (text or "").strip()
    match = _FENCE_BLOCK.search(t)
    if match:
        return match.group(1).strip()
    return _FENCE_MARKER.sub("", t).strip()


def _normalize_quotes(text: str) -> str:
    return (
        text.replace("\u201c", '"').replace("\u201d", '"')
        .replace("\u2018", "'").replace("\u2019", "'")
        .replace("\u00a0", " ")
    )


def try_parse_json_with_repairs(candidate: Optional[str]) -> Any:
    """Parse ``candidate``, applying common repairs on failure. Returns None when it cannot be parsed."""
    if not candidate:
        return None
    s = _normalize_quotes(candidate.strip())

    value = _loads(s)
    if value is not _MISSING:
        return value

    repaired = _TRAILING_COMMA.sub("", s)
    repaired = _SINGLE_QUOTED.sub(lambda m: '"' + m.group(1).replace('"', '\\"') + '"', repaired)
    repaired = _BARE_KEY.sub(r'\1"\2":', repaired)

    value = _loads(repaired)
    if value is not _MISSING:
        return value
    return None


def _balanced_object_end(text: str, start: int) -> int:
    """Index just past the object opening at ``start``, or -1 when it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def extract_first_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Find the first balanced ``{...}`` in ``text`` that parses to an object."""
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end != -1:
            parsed = try_parse_json_with_repairs(text[start:end])
            if isinstance(parsed, dict):
                return parsed
        start = text.find("{", start + 1)

    match = _GREEDY_OBJECT.search(text)
    if match:
        parsed = try_parse_json_with_repairs(match.group(0))
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_ndjson(text: Optional[str]) -> List[Any]:
    """Parse newline-delimited JSON, dropping lines that do not parse."""
    values = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        value = _loads(line)
        if value is not _MISSING:
            values.append(value)
    return values


def _array_candidates(cleaned: str) -> List[str]:
    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start != -1 and end > start:
        candidate = cleaned[start:end + 1]
    elif start != -1:
        candidate = cleaned[start:]
    else:
        candidate = cleaned

    trimmed = candidate.rstrip()
    no_comma = re.sub(r",\s*$", "", trimmed)
    candidates = [
        candidate,
        candidate + "]",
        "[" + candidate + "]",
        no_comma + "]",
        no_comma,
        re.sub(r"\]\s*$", "", trimmed) + "]",
        re.sub(r"\}\s*$", "}]", trimmed),
    ]

    # Truncated reply: keep everything up to the last complete record
    last_close = trimmed.rfind("}")
    if trimmed.startswith("[") and last_close != -1:
        candidates.append(trimmed[:last_close + 1] + "]")
    return candidates


def parse_ai_array(response: Any) -> List[Any]:
    """Coerce a model reply into a list of records.

    Tries, in order: the whole text, the ``[...]`` span with truncation repairs,
    newline-delimited records, a regex sweep for consecutive objects and finally
    a single object wrapped in a list.
    """
    if not isinstance(response, str):
        raise TypeError("Response must be a string")

    cleaned = _FENCE_MARKER.sub("", response).strip()

    value = _loads(cleaned)
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]

    for attempt in _array_candidates(cleaned):
        value = _loads(attempt)
        if isinstance(value, list):
            return value

    lines = [
        line.strip() for line in cleaned.splitlines()
        if line.strip().startswith(("{", "["))
    ]
    if lines:
        if lines[0].startswith("["):
            joined = re.sub(r"\]\s*\[", ",", "".join(lines))
            value = _loads(joined)
            if isinstance(value, list):
                return value
        else:
            records = []
            for line in lines:
                value = _loads(re.sub(r",\s*$", "", re.sub(r",\s*}$", "}", line)))
                if value is not _MISSING:
                    records.append(value)
            if records:
                return records

    records = []
    for chunk in _OBJECT_RUN.findall(cleaned):
        parsed = try_parse_json_with_repairs(chunk)
        if isinstance(parsed, dict):
            records.append(parsed)
    if records:
        return records

    single = extract_first_json_object(cleaned)
    if single is not None:
        return [single]

    raise ResponseParseError("Failed to parse API response", details=response[:500])
