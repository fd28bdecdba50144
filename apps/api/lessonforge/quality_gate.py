from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from .html_text import style_text, visible_text
from .image_compressor import SIZE_THRESHOLDS
from .planner import count_questions
from .relevance import get_cap
from .schemas import (
    ImageResult,
    Plan,
    QualityIssue,
    QualityRequirements,
    QualityResult,
    VisualSettings,
)


logger = logging.getLogger(__name__)

MIN_CHARGE_SCORE = 50
# Any hard failure keeps the score below the charge threshold.
HARD_FAILURE_SCORE_CAP = 40
HARD_FAILURE_CATEGORIES = ("html_structure",)

MAX_SINGLE_IMAGE_BYTES = 5 * 1024 * 1024
MIN_TEXT_LENGTH = 200
QUESTION_COUNT_TOLERANCE = 0.2

ERROR_PENALTIES = {
    "html_structure": 15,
    "question_count": 20,
    "content_quality": 20,
    "answer_key": 10,
    "image_size": 15,
    "image_count": 10,
    "image_missing": 10,
}
DEFAULT_ERROR_PENALTY = 10
WARNING_PENALTY = 5

PLACEHOLDER_TEXT = ("[Question", "[Answer", "Lorem ipsum", "TODO", "PLACEHOLDER", "[Insert", "TBD")
NON_PRINTABLE_CSS = ("box-shadow", "text-shadow", "linear-gradient", "radial-gradient", "@keyframes", "animation")

_QUESTION_CLASS_RE = re.compile(r'class="(?:[^"]*\s)?question(?:\s[^"]*)?"', re.IGNORECASE)
_ANSWER_CLASS_RE = re.compile(r'class="(?:[^"]*\s)?answer-item(?:\s[^"]*)?"', re.IGNORECASE)
_NUMBERED_RE = re.compile(r"\b(\d{1,2})\.\s")
_DARK_BACKGROUND_RE = re.compile(
    r"background(?:-color)?\s*:\s*(?:#(?:000|111|222|333)(?:[0-9a-f]{3})?\b|black\b|rgb\(\s*(?:[0-4]?\d)\s*,\s*(?:[0-4]?\d)\s*,\s*(?:[0-4]?\d)\s*\))",
    re.IGNORECASE,
)
_EXTERNAL_IMAGE_RE = re.compile(r"""src=["']https?://[^"']+["']""", re.IGNORECASE)


def _issue(category: str, severity: str, message: str) -> QualityIssue:
    return QualityIssue(category=category, severity=severity, message=message)


def count_questions_in_html(html: str) -> int:
    count = len(_QUESTION_CLASS_RE.findall(html))
    if count:
        return count
    return len({int(n) for n in _NUMBERED_RE.findall(visible_text(html))})


def count_answers_in_html(html: str) -> int:
    count = len(_ANSWER_CLASS_RE.findall(html))
    return count or count_questions_in_html(html)


def check_html_structure(html: str) -> list[QualityIssue]:
    issues = []
    lower = html.lower()
    if "<!doctype html>" not in lower:
        issues.append(_issue("html_structure", "error", "Missing DOCTYPE declaration"))
    if "<html" not in lower or "</html>" not in lower:
        issues.append(_issue("html_structure", "error", "Missing or incomplete HTML tags"))
    if "<head" not in lower or "</head>" not in lower:
        issues.append(_issue("html_structure", "error", "Missing HEAD section"))
    if "<body" not in lower or "</body>" not in lower:
        issues.append(_issue("html_structure", "error", "Missing BODY section"))
    return issues


def check_question_count(html_count: int, expected: int) -> list[QualityIssue]:
    if html_count == 0:
        return [_issue("question_count", "error", "No questions detected in worksheet HTML")]
    if expected <= 0 or html_count == expected:
        return []
    if abs(html_count - expected) > expected * QUESTION_COUNT_TOLERANCE:
        return [_issue("question_count", "error", f"Question count mismatch: found {html_count}, expected {expected}")]
    return [_issue("question_count", "warning", f"Question count slightly off: found {html_count}, expected {expected}")]


def check_print_friendly(html: str) -> list[QualityIssue]:
    issues = []
    lower = html.lower()
    if "<style" not in lower:
        issues.append(_issue("print_friendly", "warning", "Missing inline styles; output may not print correctly"))
    if _DARK_BACKGROUND_RE.search(html):
        issues.append(_issue("print_friendly", "warning", "Dark backgrounds waste ink when printed"))
    if "<script" in lower:
        issues.append(_issue("print_friendly", "warning", "Contains scripts, which do not run on paper"))
    if "<input" in lower or "<form" in lower:
        issues.append(_issue("print_friendly", "error", "Contains interactive form elements (not print-friendly)"))
    if "fonts.googleapis.com" in lower or "@import url" in lower:
        issues.append(_issue("print_friendly", "warning", "Uses external fonts which may not work when printed"))
    css = style_text(html)
    for pattern in NON_PRINTABLE_CSS:
        if pattern in css:
            issues.append(_issue("print_friendly", "warning", f"Contains {pattern} which may not print correctly"))
            break
    if _EXTERNAL_IMAGE_RE.search(html):
        issues.append(_issue("print_friendly", "warning", "Contains external images which may not load when printing"))
    return issues


def check_student_info(html: str) -> list[QualityIssue]:
    text = visible_text(html).lower()
    issues = []
    if "name:" not in text and "name :" not in text:
        issues.append(_issue("content_quality", "warning", "Missing Name line for student identification"))
    if "date:" not in text and "date :" not in text:
        issues.append(_issue("content_quality", "warning", "Missing Date line"))
    return issues


def check_content(html: str) -> list[QualityIssue]:
    text = visible_text(html)
    issues = [
        _issue("content_quality", "error", f'Contains placeholder text: "{marker}"')
        for marker in PLACEHOLDER_TEXT
        if marker in text
    ]
    if len(text) < MIN_TEXT_LENGTH:
        issues.append(_issue("content_quality", "error", "Content appears too short; may be incomplete"))
    return issues


def check_answer_key(worksheet_html: str, answer_key_html: str) -> list[QualityIssue]:
    if not answer_key_html or len(visible_text(answer_key_html)) < 20:
        return [_issue("answer_key", "error", "Answer key is empty or too short")]
    issues = []
    lower = answer_key_html.lower()
    if "answer key" not in lower and "answer-key" not in lower:
        issues.append(_issue("answer_key", "warning", "Answer key missing clear title/header"))
    questions = count_questions_in_html(worksheet_html)
    answers = count_answers_in_html(answer_key_html)
    if questions and answers < questions * 0.8:
        issues.append(
            _issue("answer_key", "error", f"Answer key may be incomplete: {answers} answers for {questions} questions")
        )
    return issues


def _image_bytes(image: ImageResult) -> int:
    compressed = getattr(image, "compressed_size", None)
    if compressed is not None:
        return compressed
    return len(image.base64_data) * 3 // 4


def check_images(
    images: Sequence[ImageResult],
    expected_count: int,
    richness: str,
    question_count: int,
) -> list[QualityIssue]:
    issues = []
    cap = get_cap(richness, question_count)
    if len(images) > cap:
        issues.append(
            _issue("image_count", "warning", f"Too many images ({len(images)}) for richness level '{richness}' (cap: {cap})")
        )
    if expected_count > 0 and len(images) < expected_count * 0.5:
        issues.append(
            _issue("image_count", "warning", f"Image count lower than expected: {len(images)} of {expected_count}")
        )

    real = [image for image in images if not image.is_placeholder]
    for image in real:
        size = _image_bytes(image)
        if size > MAX_SINGLE_IMAGE_BYTES:
            issues.append(
                _issue(
                    "image_size",
                    "error",
                    f"Image for {image.placement_id or 'worksheet'} is {size / 1024 / 1024:.2f}MB (limit 5MB)",
                )
            )
    total = sum(_image_bytes(image) for image in real)
    max_allowed = SIZE_THRESHOLDS.get(richness, SIZE_THRESHOLDS["standard"])
    if total > max_allowed:
        issues.append(
            _issue(
                "image_size",
                "error",
                f"Total image size ({total / 1024 / 1024:.2f}MB) exceeds limit ({max_allowed / 1024 / 1024:.0f}MB)",
            )
        )

    placeholders = len(images) - len(real)
    if not images and expected_count > 0:
        issues.append(_issue("image_missing", "warning", f"No images generated (expected {expected_count})"))
    elif placeholders:
        plural = "s" if placeholders > 1 else ""
        issues.append(
            _issue(
                "image_missing",
                "warning",
                f"{placeholders} image{plural} replaced with placeholders due to generation failures",
            )
        )
    return issues


def calculate_score(issues: Sequence[QualityIssue]) -> int:
    score = 100
    for issue in issues:
        if issue.severity == "error":
            score -= ERROR_PENALTIES.get(issue.category, DEFAULT_ERROR_PENALTY)
        else:
            score -= WARNING_PENALTY
    if any(issue.severity == "error" and issue.category in HARD_FAILURE_CATEGORIES for issue in issues):
        score = min(score, HARD_FAILURE_SCORE_CAP)
    return max(0, score)


def run_quality_gate(
    html: str,
    plan: Plan,
    requirements: QualityRequirements,
    answer_key_html: str = "",
    images: Optional[Sequence[ImageResult]] = None,
    visual_settings: Optional[VisualSettings] = None,
) -> QualityResult:
    issues: list[QualityIssue] = []
    issues.extend(check_html_structure(html))
    issues.extend(check_question_count(count_questions_in_html(html), requirements.expected_question_count))
    if requirements.require_print_friendly:
        issues.extend(check_print_friendly(html))
    issues.extend(check_student_info(html))
    issues.extend(check_content(html))
    if requirements.require_answer_key:
        issues.extend(check_answer_key(html, answer_key_html))
    if images is not None and visual_settings is not None and visual_settings.include_visuals:
        richness = requirements.visual_richness or visual_settings.richness
        expected = requirements.expected_image_count
        if expected is None:
            expected = len(plan.visual_placements)
        issues.extend(check_images(images, expected, richness, count_questions(plan)))

    score = calculate_score(issues)
    passed = not any(
        issue.severity == "error" and issue.category in HARD_FAILURE_CATEGORIES for issue in issues
    )
    errors = sum(1 for issue in issues if issue.severity == "error")
    logger.info(
        "Quality score %d/100 (%d errors, %d warnings)",
        score,
        errors,
        len(issues) - errors,
    )
    return QualityResult(
        passed=passed,
        score=score,
        issues=issues,
        should_charge=passed and score >= MIN_CHARGE_SCORE,
    )


def get_quality_summary(result: QualityResult) -> str:
    if result.passed and result.should_charge:
        return f"Quality check passed with score {result.score}/100"
    errors = [issue for issue in result.issues if issue.severity == "error"] or result.issues
    lines = "\n".join(f"- {issue.message}" for issue in errors)
    return f"Quality check failed (score: {result.score}/100)\n\nIssues:\n{lines}"
