from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from .errors import ProviderConfigurationError, ProviderError, RepairParseError
from .llm import ContentProvider, TokenUsage
from .parsing import parse_model_json
from .planner import count_questions
from .prompts import build_repair_prompt
from .schemas import (
    FALLBACK_ANSWER,
    Plan,
    ValidationIssue,
    ValidationRequirements,
    ValidationResult,
)


logger = logging.getLogger(__name__)

GRADE_MAX_SYLLABLES = {"K": 2, "1": 2, "2": 3, "3": 3, "4": 4, "5": 4, "6": 5}
GRADE_MAX_SENTENCE_LENGTH = {"K": 8, "1": 10, "2": 15, "3": 20, "4": 25, "5": 30, "6": 35}

VALID_IMAGE_PURPOSES = (
    "counting_support",
    "phonics_cue",
    "shape_diagram",
    "word_problem_context",
    "science_diagram_simple",
    "matching_support",
    "diagram",
    "illustration",
    "decoration",
)
VALID_PLACEMENT_SIZES = ("small", "medium", "wide")
LEGACY_PLACEMENT_SIZES = ("large",)

ITEM_VISUAL_FIELDS = ("visualHint", "imageDescription", "visual", "image", "visualDescription")

MAX_REPAIRABLE_ERRORS = 5
MAX_READABILITY_ISSUES_PER_QUESTION = 2


@dataclass
class RepairOutcome:
    plan: Plan
    validation: ValidationResult
    was_repaired: bool


def count_syllables(word: str) -> int:
    cleaned = re.sub(r"[^a-z]", "", word.lower())
    if len(cleaned) <= 3:
        return 1
    groups = re.findall(r"[aeiouy]+", cleaned)
    if not groups:
        return 1
    count = len(groups)
    if cleaned.endswith("e"):
        count -= 1
    if cleaned.endswith("le"):
        count += 1
    return max(1, count)


def check_readability(text: str, grade: str) -> list[ValidationIssue]:
    max_syllables = GRADE_MAX_SYLLABLES.get(grade, 5)
    max_words = GRADE_MAX_SENTENCE_LENGTH.get(grade, 35)
    issues: list[ValidationIssue] = []
    for sentence in re.split(r"[.!?]+", text):
        words = sentence.split()
        if not words:
            continue
        if len(words) > max_words:
            issues.append(
                ValidationIssue(
                    severity="warning",
                    field="content",
                    message=f"Sentence too long for grade {grade} ({len(words)} words, max {max_words})",
                    suggestion="Break into shorter sentences",
                )
            )
        for word in words:
            syllables = count_syllables(word)
            if syllables > max_syllables + 1:
                issues.append(
                    ValidationIssue(
                        severity="warning",
                        field="vocabulary",
                        message=f'Complex word "{word}" may be difficult for grade {grade}',
                        suggestion=f"Consider simpler alternatives (word has ~{syllables} syllables)",
                    )
                )
    return issues


def _answer_missing(answer: Optional[str]) -> bool:
    return not answer or not answer.strip() or answer.strip() == FALLBACK_ANSWER


def _answer_in_options(answer: str, options: list[str]) -> bool:
    return any(opt == answer or answer in opt or opt in answer for opt in options)


def _strip_item_visual_fields(plan: Plan) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for item in plan.iter_items():
        extra = item.model_extra
        if not extra:
            continue
        for name in ITEM_VISUAL_FIELDS:
            if name in extra:
                del extra[name]
                issues.append(
                    ValidationIssue(
                        severity="warning",
                        field=f"sections.items.{item.id}.{name}",
                        message=f'Stripped per-item visual field "{name}" from {item.id}; use visualPlacements instead',
                        suggestion="Move visual data to the top-level visualPlacements array",
                    )
                )
    return issues


def _check_placements(plan: Plan, item_ids: set[str]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for idx, placement in enumerate(plan.visual_placements):
        prefix = f"visualPlacements[{idx}]"
        if placement.after_item_id not in item_ids:
            issues.append(
                ValidationIssue(
                    severity="warning",
                    field=f"{prefix}.afterItemId",
                    message=f'Visual placement references non-existent item "{placement.after_item_id}"',
                    suggestion="Use a valid item ID from the worksheet",
                )
            )
        if not placement.description.strip():
            issues.append(
                ValidationIssue(
                    severity="warning",
                    field=f"{prefix}.description",
                    message=f"Visual placement {idx} has empty description",
                    suggestion="Provide a short description for image generation",
                )
            )
        if placement.purpose and placement.purpose not in VALID_IMAGE_PURPOSES:
            issues.append(
                ValidationIssue(
                    severity="warning",
                    field=f"{prefix}.purpose",
                    message=f'Visual placement {idx} has invalid purpose "{placement.purpose}"',
                    suggestion=f"Use one of: {', '.join(VALID_IMAGE_PURPOSES)}",
                )
            )
        size = placement.size
        if size and size not in VALID_PLACEMENT_SIZES and size not in LEGACY_PLACEMENT_SIZES:
            issues.append(
                ValidationIssue(
                    severity="warning",
                    field=f"{prefix}.size",
                    message=f'Visual placement {idx} has invalid size "{size}"',
                    suggestion="Use one of: small, medium, wide",
                )
            )
    return issues


def validate_plan(plan: Plan, requirements: ValidationRequirements) -> ValidationResult:
    """Check a plan against requirements.

    Structural defects are reported as issues, never raised. Per-item visual
    fields are removed from ``plan`` in place.
    """
    issues: list[ValidationIssue] = []

    total = count_questions(plan)
    if total < requirements.min_questions:
        issues.append(
            ValidationIssue(
                severity="error",
                field="structure.sections",
                message=f"Not enough questions: found {total}, expected at least {requirements.min_questions}",
                suggestion=f"Add {requirements.min_questions - total} more questions",
            )
        )
    if total > requirements.max_questions:
        issues.append(
            ValidationIssue(
                severity="warning",
                field="structure.sections",
                message=f"Too many questions: found {total}, expected at most {requirements.max_questions}",
                suggestion=f"Remove {total - requirements.max_questions} questions",
            )
        )

    seen: set[str] = set()
    for item in plan.iter_items():
        if not item.id.strip():
            issues.append(
                ValidationIssue(
                    severity="error",
                    field="sections.items.id",
                    message="Question is missing an id",
                    suggestion="Give every question a unique id such as q1, q2",
                )
            )
        elif item.id in seen:
            issues.append(
                ValidationIssue(
                    severity="error",
                    field=f"sections.items.{item.id}",
                    message=f"Duplicate question ID: {item.id}",
                    suggestion="Ensure all question IDs are unique",
                )
            )
        seen.add(item.id)

    for item in plan.iter_items():
        if requirements.require_answers and _answer_missing(item.correct_answer):
            issues.append(
                ValidationIssue(
                    severity="error",
                    field=f"sections.items.{item.id}.correctAnswer",
                    message=f"Question {item.id} is missing a correct answer",
                    suggestion="Provide the correct answer for this question",
                )
            )
        if item.question_type == "multiple_choice":
            options = item.options or []
            if len(options) < 2:
                issues.append(
                    ValidationIssue(
                        severity="error",
                        field=f"sections.items.{item.id}.options",
                        message=f"Multiple choice question {item.id} needs at least 2 options",
                        suggestion="Add answer options A, B, C, D",
                    )
                )
            elif item.correct_answer and not _answer_in_options(item.correct_answer, options):
                issues.append(
                    ValidationIssue(
                        severity="error",
                        field=f"sections.items.{item.id}.correctAnswer",
                        message=f'Correct answer "{item.correct_answer}" not found in options for question {item.id}',
                        suggestion="Ensure correctAnswer exactly matches one of the options",
                    )
                )
        if len(item.question_text.strip()) < 5:
            issues.append(
                ValidationIssue(
                    severity="error",
                    field=f"sections.items.{item.id}.questionText",
                    message=f"Question {item.id} has empty or very short text",
                    suggestion="Provide a complete question",
                )
            )
        readability = check_readability(item.question_text, requirements.grade)
        issues.extend(readability[:MAX_READABILITY_ISSUES_PER_QUESTION])

    instructions = plan.structure.header.instructions
    if instructions:
        issues.extend(check_readability(instructions, requirements.grade))

    issues.extend(_strip_item_visual_fields(plan))
    issues.extend(_check_placements(plan, plan.item_ids()))

    error_count = sum(1 for issue in issues if issue.severity == "error")
    return ValidationResult(
        valid=error_count == 0,
        issues=issues,
        auto_repairable=error_count <= MAX_REPAIRABLE_ERRORS,
    )


async def attempt_repair(
    plan: Plan,
    issues: list[ValidationIssue],
    provider: ContentProvider,
    *,
    max_tokens: int = 4096,
    usage: Optional[TokenUsage] = None,
) -> Plan:
    """Ask the model once to fix ``issues``. Does not re-validate."""
    prompt = build_repair_prompt(plan, issues)
    response = await provider.generate_content(prompt, max_tokens=max_tokens)
    if usage is not None:
        usage.add(response)
    data = parse_model_json(response.content, error_cls=RepairParseError)
    try:
        return Plan.model_validate(data)
    except ValidationError as exc:
        raise RepairParseError(f"{exc.error_count()} schema error(s)") from exc


async def validate_and_repair(
    plan: Plan,
    requirements: ValidationRequirements,
    provider: ContentProvider,
    *,
    max_tokens: int = 4096,
    usage: Optional[TokenUsage] = None,
) -> RepairOutcome:
    validation = validate_plan(plan, requirements)
    if validation.valid:
        return RepairOutcome(plan=plan, validation=validation, was_repaired=False)

    errors = validation.errors
    if not validation.auto_repairable:
        logger.warning("Plan has %d errors; too many to repair, skipping model call", len(errors))
        return RepairOutcome(plan=plan, validation=validation, was_repaired=False)

    logger.info("Attempting plan repair for %d error(s)", len(errors))
    try:
        repaired = await attempt_repair(plan, errors, provider, max_tokens=max_tokens, usage=usage)
    except ProviderConfigurationError:
        raise
    except (RepairParseError, ProviderError) as exc:
        logger.warning("Plan repair failed, keeping original plan: %s", exc)
        return RepairOutcome(plan=plan, validation=validation, was_repaired=False)

    if requirements.grade:
        repaired.metadata.grade = requirements.grade
    if requirements.subject:
        repaired.metadata.subject = requirements.subject
    revalidation = validate_plan(repaired, requirements)
    logger.info(
        "Plan repaired: %d -> %d error(s)",
        len(errors),
        len(revalidation.errors),
    )
    return RepairOutcome(plan=repaired, validation=revalidation, was_repaired=True)
