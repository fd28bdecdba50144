from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .html_text import visible_text

Number = Union[int, float]

_EXPRESSION_RE = re.compile(
    r"(?:\b[Qq](?:uestion)?\s*(\d+)[:.]\s*)?"
    r"(\d+(?:\.\d+)?)\s*([+\-−×÷*/])\s*(\d+(?:\.\d+)?)\s*=\s*(-?\d+(?:\.\d+)?)"
)
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_DECIMAL_RE = re.compile(r"\d+\.\d+")
_NEGATIVE_RE = re.compile(r"(?<![\w)])[-−]\d+")
_MULTIPLICATION_RE = re.compile(r"×|\d\s*\*\s*\d")
_DIVISION_RE = re.compile(r"÷|\d\s*/\s*\d+(?:\.\d+)?\s*=")

OPERATORS: dict[str, Callable[[Number, Number], Number]] = {
    "+": operator.add,
    "-": operator.sub,
    "−": operator.sub,
    "*": operator.mul,
    "×": operator.mul,
    "/": operator.truediv,
    "÷": operator.truediv,
}


@dataclass
class MathIssue:
    expression: str
    stated_answer: Number
    expected_answer: Optional[Number]
    message: str
    question_number: Optional[int] = None


@dataclass
class MathCheckResult:
    valid: bool
    total_expressions: int = 0
    correct_count: int = 0
    issues: list[MathIssue] = field(default_factory=list)


@dataclass(frozen=True)
class GradeRules:
    max_number: int
    allow_multiplication: bool
    allow_division: bool
    allow_decimals: bool
    allow_negatives: bool


@dataclass
class GradeCheckResult:
    valid: bool
    issues: list[str] = field(default_factory=list)


def _number(raw: str) -> Number:
    value = float(raw)
    return int(value) if value.is_integer() and "." not in raw else value


def _tidy(value: Number) -> Number:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return round(value, 4) if isinstance(value, float) else value


def validate_math_answers(markup: str, grade: str) -> MathCheckResult:
    """Check every ``a op b = c`` in ``markup`` against its computed value."""
    text = visible_text(markup)
    tolerance = 0 if grade in ("K", "1") else 0.01
    result = MathCheckResult(valid=True)
    for match in _EXPRESSION_RE.finditer(text):
        question, left_raw, op, right_raw, stated_raw = match.groups()
        left, right, stated = _number(left_raw), _number(right_raw), _number(stated_raw)
        expression = f"{left} {op} {right}"
        question_number = int(question) if question else None
        result.total_expressions += 1
        if op in ("/", "÷") and right == 0:
            result.issues.append(
                MathIssue(
                    expression=expression,
                    stated_answer=stated,
                    expected_answer=None,
                    message=f"Cannot evaluate expression: {expression}",
                    question_number=question_number,
                )
            )
            continue
        expected = _tidy(OPERATORS[op](left, right))
        if abs(expected - stated) <= tolerance:
            result.correct_count += 1
            continue
        result.issues.append(
            MathIssue(
                expression=expression,
                stated_answer=stated,
                expected_answer=expected,
                message=f"Incorrect answer: {expression} = {stated}, expected {expected}",
                question_number=question_number,
            )
        )
    result.valid = not result.issues
    return result


def validate_answer_key_against_worksheet(worksheet_html: str, answer_key_html: str, grade: str) -> MathCheckResult:
    worksheet = validate_math_answers(worksheet_html, grade)
    answer_key = validate_math_answers(answer_key_html, grade)
    issues = worksheet.issues + answer_key.issues
    return MathCheckResult(
        valid=not issues,
        total_expressions=worksheet.total_expressions + answer_key.total_expressions,
        correct_count=worksheet.correct_count + answer_key.correct_count,
        issues=issues,
    )


GRADE_RULES = {
    "K": GradeRules(10, False, False, False, False),
    "1": GradeRules(20, False, False, False, False),
    "2": GradeRules(100, False, False, False, False),
    "3": GradeRules(1000, True, True, False, False),
}
DEFAULT_GRADE_RULES = GradeRules(10000, True, True, True, True)


def get_validation_rules_for_grade(grade: str) -> GradeRules:
    return GRADE_RULES.get(grade, DEFAULT_GRADE_RULES)


def validate_grade_appropriateness(markup: str, grade: str) -> GradeCheckResult:
    rules = get_validation_rules_for_grade(grade)
    text = visible_text(markup)
    issues = []
    for raw in _NUMBER_RE.findall(text):
        value = _number(raw)
        if value > rules.max_number:
            issues.append(f"Number {raw} exceeds grade {grade} maximum of {rules.max_number}")
    if not rules.allow_multiplication and _MULTIPLICATION_RE.search(text):
        issues.append(f"Multiplication not expected for grade {grade}")
    if not rules.allow_division and _DIVISION_RE.search(text):
        issues.append(f"Division not expected for grade {grade}")
    if not rules.allow_decimals and _DECIMAL_RE.search(text):
        issues.append(f"Decimals not expected for grade {grade}")
    if not rules.allow_negatives and _NEGATIVE_RE.search(text):
        issues.append(f"Negative numbers not expected for grade {grade}")
    return GradeCheckResult(valid=not issues, issues=issues)
