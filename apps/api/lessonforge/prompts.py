from __future__ import annotations

import json
from typing import Iterable

from .schemas import GenerationContext, Plan, ValidationIssue


PLAN_JSON_START = "CURRENT PLAN JSON:"
PLAN_JSON_END = "END PLAN JSON"

_PLACEMENT_GUIDANCE = {
    "minimal": "Suggest at most 2 visual placements, only where a picture helps a student answer.",
    "standard": "Suggest at most 5 visual placements that support specific questions.",
    "rich": "Suggest roughly one visual placement per question, at most 10.",
}

_PLAN_SHAPE = {
    "version": "1.0",
    "metadata": {
        "title": "string",
        "topic": "string",
        "learningObjectives": ["string"],
        "estimatedTime": "15-20 minutes",
    },
    "structure": {
        "header": {
            "title": "string",
            "hasNameLine": True,
            "hasDateLine": True,
            "instructions": "string",
        },
        "sections": [
            {
                "id": "s1",
                "type": "questions",
                "title": "string",
                "instructions": "string",
                "items": [
                    {
                        "id": "q1",
                        "questionText": "string",
                        "questionType": "multiple_choice | true_false | fill_blank | matching | short_answer",
                        "options": ["only for multiple_choice"],
                        "correctAnswer": "string",
                        "explanation": "string",
                        "points": 1,
                    }
                ],
            }
        ],
    },
    "style": {"difficulty": "easy | medium | hard", "visualStyle": "minimal | standard | rich"},
    "visualPlacements": [
        {
            "afterItemId": "q1",
            "description": "what the picture shows",
            "purpose": "counting_support | phonics_cue | shape_diagram | word_problem_context | "
            "science_diagram_simple | matching_support | diagram | illustration",
            "size": "small | medium | wide",
        }
    ],
}


def grade_label(grade: str) -> str:
    return "Kindergarten" if grade == "K" else f"Grade {grade}"


def build_plan_prompt(context: GenerationContext) -> str:
    options = context.options
    visuals = context.visual_settings
    lines = [
        f"Create a {context.subject} worksheet plan for {grade_label(context.grade)} students.",
        "",
        f"Teacher request: {context.prompt.strip()}",
        "",
        "Requirements:",
        f"- Write exactly {options.question_count} questions.",
        f"- Difficulty: {options.difficulty}.",
        "- Every question needs a unique id (q1, q2, ...) and a non-empty correctAnswer.",
        "- Use vocabulary and sentence length appropriate for the grade.",
        "- Give multiple_choice questions at least two options that include the correct answer.",
    ]
    if visuals.include_visuals:
        lines.append(f"- {_PLACEMENT_GUIDANCE[visuals.richness]}")
        lines.append("- Put visuals only in visualPlacements; never add image fields to individual questions.")
        if visuals.theme:
            lines.append(f"- Visual theme: {visuals.theme}.")
    else:
        lines.append("- Do not include any visualPlacements.")
    inspiration = context.inspiration
    if inspiration and (inspiration.design_items or inspiration.content_items):
        lines.append("")
        lines.append("Inspiration (reference material only):")
        for text in inspiration.content_items:
            lines.append(f"- Content: {text.strip()[:1500]}")
        for text in inspiration.design_items:
            lines.append(f"- Design: {text.strip()[:500]}")
    lines.extend(
        [
            "",
            "Return ONLY a JSON object with this shape:",
            json.dumps(_PLAN_SHAPE, indent=2),
        ]
    )
    return "\n".join(lines)


def format_issue(issue: ValidationIssue) -> str:
    line = f"- [{issue.severity.upper()}] {issue.field}: {issue.message}"
    if issue.suggestion:
        line += f" (Suggestion: {issue.suggestion})"
    return line


def build_repair_prompt(plan: Plan, issues: Iterable[ValidationIssue]) -> str:
    issue_lines = "\n".join(format_issue(issue) for issue in issues)
    return "\n".join(
        [
            "The following worksheet plan has validation problems. Fix every listed issue.",
            "Keep all other content, ids and structure unchanged.",
            "",
            "Issues:",
            issue_lines,
            "",
            PLAN_JSON_START,
            json.dumps(plan.to_json_dict(), indent=2),
            PLAN_JSON_END,
            "",
            "Return ONLY the corrected plan as a JSON object.",
        ]
    )
