"""Recover a single JSON action object from noisy model output."""

import json
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


def strip_code_fences(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    trimmed = value.strip()
    fenced = _FENCE_RE.match(trimmed)
    if fenced:
        return fenced.group(1).strip()
    return trimmed


def extract_first_json_object(value: Any) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, or None.

    Braces inside JSON strings (including escaped quotes) do not count
    toward the depth.
    """
    if not isinstance(value, str):
        return None

    depth = 0
    in_string = False
    escape = False
    start = -1
    for index, ch in enumerate(value):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = index
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return value[start : index + 1]
    return None


def parse_action_response(raw: Any) -> Optional[Any]:
    """Parse a model reply into a JSON value.

    Returns None when nothing parseable is found; callers decide whether the
    value is a usable action object.
    """
    if not isinstance(raw, str):
        return None
    trimmed = strip_code_fences(raw)
    if not trimmed:
        return None

    try:
        return json.loads(trimmed)
    except ValueError:
        recovered = extract_first_json_object(trimmed)
        if not recovered:
            return None
        try:
            return json.loads(recovered)
        except ValueError:
            return None
