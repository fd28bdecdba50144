from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .prompts import grade_label
from .schemas import PLACEHOLDER_PREFIX, ImagePlacement, ImageResult, Plan, PlanItem


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

SIZE_CLASSES = {
    "small": "img-small",
    "medium": "img-medium",
    "wide": "img-wide",
    "large": "img-large",
}
DEFAULT_SIZE_CLASS = "img-default"

QUESTION_KINDS = ("multiple_choice", "true_false", "fill_blank", "matching", "short_answer")

SCORING_LEGEND = "90-100%: Excellent | 80-89%: Good | 70-79%: Satisfactory | Below 70%: Needs Review"

_BLANK_RE = re.compile(r"_{3,}")

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass
class PlacedImage:
    src: str
    css_class: str
    alt: str


@dataclass
class QuestionEntry:
    number: int
    item: PlanItem
    kind: str
    parts: list[str] = field(default_factory=list)
    images: list[PlacedImage] = field(default_factory=list)


@dataclass
class AssemblyResult:
    worksheet_html: str
    answer_key_html: str
    lesson_plan_html: str


def size_class(size: Optional[str]) -> str:
    return SIZE_CLASSES.get((size or "").lower(), DEFAULT_SIZE_CLASS)


def image_src(image: ImageResult) -> str:
    if image.is_placeholder:
        return f"data:image/svg+xml;base64,{image.base64_data[len(PLACEHOLDER_PREFIX):]}"
    return f"data:{image.media_type};base64,{image.base64_data}"


def _find_placement(
    image: ImageResult,
    index: int,
    placements: Sequence[ImagePlacement],
    used: set[int],
) -> Optional[int]:
    if image.placement_id:
        matches = [idx for idx, p in enumerate(placements) if p.after_item_id == image.placement_id]
        for idx in matches:
            if idx not in used:
                return idx
        if matches:
            return matches[0]
    if index < len(placements):
        return index
    return None


def map_images(plan: Plan, images: Sequence[ImageResult]) -> dict[str, list[PlacedImage]]:
    """Group images by the item they follow.

    An image goes to the placement whose item id matches its ``placement_id``;
    otherwise to the placement at the same position.
    """
    placements = plan.visual_placements
    item_ids = plan.item_ids()
    placed: dict[str, list[PlacedImage]] = {}
    used: set[int] = set()
    for index, image in enumerate(images):
        placement_idx = _find_placement(image, index, placements, used)
        if placement_idx is not None:
            used.add(placement_idx)
            placement = placements[placement_idx]
            item_id, size, alt = placement.after_item_id, placement.size, placement.description
        elif image.placement_id:
            item_id, size, alt = image.placement_id, "medium", ""
        else:
            logger.debug("Image %d has no placement; skipping", index)
            continue
        if item_id not in item_ids:
            logger.debug("Image %d targets unknown item %r; skipping", index, item_id)
            continue
        placed.setdefault(item_id, []).append(
            PlacedImage(src=image_src(image), css_class=size_class(size), alt=alt or "Illustration")
        )
    return placed


def _question_kind(item: PlanItem) -> str:
    kind = (item.question_type or "").lower()
    return kind if kind in QUESTION_KINDS else "short_answer"


def _numbered_entries(plan: Plan, placed: Optional[dict[str, list[PlacedImage]]] = None) -> list[list[QuestionEntry]]:
    number = 0
    sections = []
    for section in plan.structure.sections:
        entries = []
        for item in section.items:
            number += 1
            kind = _question_kind(item)
            entries.append(
                QuestionEntry(
                    number=number,
                    item=item,
                    kind=kind,
                    parts=_BLANK_RE.split(item.question_text) if kind == "fill_blank" else [],
                    images=(placed or {}).get(item.id, []),
                )
            )
        sections.append(entries)
    return sections


def total_points(plan: Plan) -> float:
    return sum(item.points if item.points is not None else 1 for item in plan.iter_items())


def _format_points(points: float) -> str:
    return str(int(points)) if float(points).is_integer() else f"{points:g}"


def assemble_worksheet(plan: Plan, images: Sequence[ImageResult] = ()) -> str:
    placed = map_images(plan, images)
    sections = [
        {"title": section.title, "instructions": section.instructions, "entries": entries}
        for section, entries in zip(plan.structure.sections, _numbered_entries(plan, placed))
    ]
    return _env.get_template("worksheet.html").render(plan=plan, sections=sections)


def assemble_answer_key(plan: Plan) -> str:
    entries = [entry for section in _numbered_entries(plan) for entry in section]
    return _env.get_template("answer_key.html").render(
        plan=plan,
        entries=entries,
        total_points=_format_points(total_points(plan)),
        scoring_legend=SCORING_LEGEND,
    )


def assemble_lesson_plan(plan: Plan) -> str:
    question_count = sum(1 for _ in plan.iter_items())
    return _env.get_template("lesson_plan.html").render(
        plan=plan,
        grade_label=grade_label(plan.metadata.grade),
        topic=plan.metadata.topic or plan.metadata.subject or "this topic",
        guided_count=min(3, question_count) or 1,
    )


def assemble_all(
    plan: Plan,
    *,
    include_answer_key: bool = True,
    include_lesson_plan: bool = True,
    images: Sequence[ImageResult] = (),
) -> AssemblyResult:
    result = AssemblyResult(
        worksheet_html=assemble_worksheet(plan, images),
        answer_key_html=assemble_answer_key(plan) if include_answer_key else "",
        lesson_plan_html=assemble_lesson_plan(plan) if include_lesson_plan else "",
    )
    logger.info(
        "Assembled %r: worksheet %d chars, answer key %d chars, lesson plan %d chars",
        plan.metadata.title,
        len(result.worksheet_html),
        len(result.answer_key_html),
        len(result.lesson_plan_html),
    )
    return result
