from __future__ import annotations

import pytest

from lessonforge.errors import PlanParseError, RepairParseError
from lessonforge.parsing import find_balanced_object, parse_model_json, strip_code_fence


def test_strip_code_fence_removes_json_fence() -> None:
    text = '```json\n{"version": "1.0"}\n```'
    assert strip_code_fence(text) == '{"version": "1.0"}'


def test_strip_code_fence_leaves_plain_text() -> None:
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_find_balanced_object_ignores_braces_in_strings() -> None:
    text = 'Sure! {"q": "use } and { freely", "n": {"x": 1}} trailing'
    assert find_balanced_object(text) == '{"q": "use } and { freely", "n": {"x": 1}}'


def test_find_balanced_object_returns_none_without_object() -> None:
    assert find_balanced_object("no json here") is None


def test_parse_model_json_accepts_fenced_output() -> None:
    assert parse_model_json('```\n{"version": "1.0"}\n```') == {"version": "1.0"}


def test_parse_model_json_recovers_object_from_prose() -> None:
    text = 'Here is your plan:\n{"version": "1.0", "metadata": {"title": "Shapes"}}\nEnjoy!'
    data = parse_model_json(text)
    assert data["metadata"]["title"] == "Shapes"


def test_parse_model_json_rejects_garbage() -> None:
    with pytest.raises(PlanParseError):
        parse_model_json("I could not make a worksheet today.")


def test_parse_model_json_rejects_arrays() -> None:
    with pytest.raises(PlanParseError, match="JSON object"):
        parse_model_json("[1, 2, 3]")


def test_parse_model_json_uses_given_error_class() -> None:
    with pytest.raises(RepairParseError, match="Plan repair failed to produce valid JSON"):
        parse_model_json("{not json", error_cls=RepairParseError)
