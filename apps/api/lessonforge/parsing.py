from __future__ import annotations

import json
import re
from typing import Optional

from .errors import PlanParseError


_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL | re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, honouring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def parse_model_json(text: str, *, error_cls: type[PlanParseError] = PlanParseError) -> dict:
    """Decode a JSON object from model output.

    Strict decode of the fence-stripped text first, then one retry on the
    first balanced object found in it. Anything else raises ``error_cls``.
    """
    cleaned = strip_code_fence(text or "")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        block = find_balanced_object(cleaned)
        if block is None:
            raise error_cls("No JSON object found in model output") from None
        try:
            data = json.loads(block)
        except json.JSONDecodeError as exc:
            raise error_cls(f"Model output is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise error_cls("Model output must be a JSON object")
    return data
