from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from .errors import PlanParseError
from .llm import ContentProvider, TokenUsage
from .parsing import parse_model_json
from .prompts import build_plan_prompt
from .schemas import (
    FALLBACK_ANSWER,
    GenerationContext,
    Plan,
    PlanHeader,
    PlanItem,
    PlanMetadata,
    PlanSection,
    PlanStructure,
    PlanStyle,
)


logger = logging.getLogger(__name__)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise PlanParseError(f"Invalid plan structure: {message}")


def check_basic_structure(data: dict) -> None:
    _require(bool(data.get("version")), "missing version")
    metadata = data.get("metadata")
    _require(isinstance(metadata, dict) and bool(metadata.get("title")), "missing metadata.title")
    structure = data.get("structure")
    _require(isinstance(structure, dict) and bool(structure.get("header")), "missing structure.header")
    sections = structure.get("sections")
    _require(isinstance(sections, list) and len(sections) > 0, "no sections")
    for s_idx, section in enumerate(sections):
        _require(isinstance(section, dict), f"section {s_idx} is not an object")
        items = section.get("items")
        _require(isinstance(items, list), f"section {s_idx} has no items")
        for i_idx, item in enumerate(items):
            where = f"sections[{s_idx}].items[{i_idx}]"
            _require(isinstance(item, dict), f"{where} is not an object")
            for key in ("id", "questionText", "correctAnswer"):
                value = item.get(key)
                _require(value is not None and str(value).strip() != "", f"{where} missing {key}")


def plan_from_model_output(text: str, context: GenerationContext) -> Plan:
    data = parse_model_json(text)
    check_basic_structure(data)
    # Grade and subject always come from the request.
    data["metadata"]["grade"] = context.grade
    data["metadata"]["subject"] = context.subject
    try:
        return Plan.model_validate(data)
    except ValidationError as exc:
        raise PlanParseError(f"Plan does not match the expected shape: {exc.error_count()} error(s)") from exc


async def create_plan(
    context: GenerationContext,
    provider: ContentProvider,
    *,
    max_tokens: int = 4096,
    usage: Optional[TokenUsage] = None,
) -> Plan:
    prompt = build_plan_prompt(context)
    response = await provider.generate_content(prompt, max_tokens=max_tokens)
    if usage is not None:
        usage.add(response)
    plan = plan_from_model_output(response.content, context)
    logger.info(
        "Plan created: %r with %d questions via %s",
        plan.metadata.title,
        count_questions(plan),
        provider.name,
    )
    return plan


def create_fallback_plan(context: GenerationContext) -> Plan:
    count = context.options.question_count
    items = [
        PlanItem(
            id=f"q{i}",
            question_text=f"[Question {i} - Unable to generate specific content]",
            question_type="short_answer",
            correct_answer=FALLBACK_ANSWER,
            explanation="Review the question with your teacher.",
        )
        for i in range(1, count + 1)
    ]
    title = f"{context.subject} Worksheet"
    return Plan(
        version="1.0",
        metadata=PlanMetadata(
            title=title,
            grade=context.grade,
            subject=context.subject,
            topic=context.prompt.strip()[:100],
            learning_objectives=[f"Practice {context.subject} skills"],
        ),
        structure=PlanStructure(
            header=PlanHeader(
                title=title,
                has_name_line=True,
                has_date_line=True,
                instructions="Complete each question carefully. Show your work.",
            ),
            sections=[
                PlanSection(
                    id="s1",
                    type="questions",
                    title="Practice Problems",
                    items=items,
                )
            ],
        ),
        style=PlanStyle(
            difficulty=context.options.difficulty,
            visual_style=context.visual_settings.richness,
        ),
        visual_placements=[],
    )


def count_questions(plan: Plan) -> int:
    return sum(len(section.items) for section in plan.structure.sections)
