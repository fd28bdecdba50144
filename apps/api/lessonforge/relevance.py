from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .schemas import ImagePlacement


logger = logging.getLogger(__name__)

INSTRUCTIONAL_PURPOSES = (
    "counting_support",
    "phonics_cue",
    "shape_diagram",
    "word_problem_context",
    "science_diagram_simple",
    "matching_support",
    "diagram",
)

RICHNESS_CAPS = {"minimal": 2, "standard": 5}
MAX_RICH_IMAGES = 10

PURPOSE_SCORES = {
    "counting_support": 95,
    "phonics_cue": 95,
    "shape_diagram": 90,
    "science_diagram_simple": 90,
    "word_problem_context": 85,
    "matching_support": 80,
    "diagram": 75,
    "illustration": 50,
    "decoration": 10,
}

# Checked in order; the first purpose with a matching keyword wins.
PURPOSE_KEYWORDS = {
    "counting_support": ("count", "counting", "number", "objects", "groups", "sets", "how many", "addition", "subtraction"),
    "phonics_cue": ("letter", "sound", "phonics", "rhyme", "word", "spelling", "vowel", "consonant"),
    "shape_diagram": ("shape", "circle", "square", "triangle", "rectangle", "geometry", "angle"),
    "word_problem_context": ("story", "scenario", "problem", "situation", "real world", "example"),
    "science_diagram_simple": ("science", "diagram", "cycle", "plant", "animal", "weather", "body", "earth"),
    "matching_support": ("match", "matching", "connect", "pair", "same", "different"),
    "diagram": ("diagram", "chart", "graph", "visual", "show", "demonstrate"),
    "illustration": ("picture", "image", "illustration", "drawing"),
    "decoration": ("decorate", "theme", "border", "background", "fun"),
}

EDUCATIONAL_KEYWORDS = (
    "count",
    "number",
    "letter",
    "word",
    "math",
    "science",
    "read",
    "learn",
    "example",
    "show",
    "demonstrate",
    "help",
    "understand",
    "explain",
    "practice",
    "exercise",
)


@dataclass
class RelevanceCheck:
    approved: bool
    purpose: str
    score: int
    reason: str = ""


@dataclass
class FilterStats:
    total: int = 0
    accepted: int = 0
    rejected: int = 0
    cap: int = 0
    by_purpose: dict[str, int] = field(default_factory=dict)


@dataclass
class FilterResult:
    accepted: list[ImagePlacement] = field(default_factory=list)
    rejected: list[ImagePlacement] = field(default_factory=list)
    stats: FilterStats = field(default_factory=FilterStats)


@dataclass
class PlacementCountCheck:
    valid: bool
    cap: int
    message: Optional[str] = None


def infer_purpose(placement: ImagePlacement) -> str:
    explicit = (placement.purpose or "").lower().strip()
    if explicit in PURPOSE_SCORES:
        return explicit
    description = placement.description.lower()
    for purpose, keywords in PURPOSE_KEYWORDS.items():
        if any(keyword in description for keyword in keywords):
            return purpose
    return "illustration"


def has_educational_keywords(description: str) -> bool:
    lower = description.lower()
    return any(keyword in lower for keyword in EDUCATIONAL_KEYWORDS)


def check_relevance(placement: ImagePlacement) -> RelevanceCheck:
    purpose = infer_purpose(placement)
    if purpose == "decoration":
        return RelevanceCheck(False, "decoration", PURPOSE_SCORES["decoration"], "Purely decorative images are filtered")
    if purpose == "illustration":
        if has_educational_keywords(placement.description):
            return RelevanceCheck(True, purpose, 60, "Illustration supports educational content")
        return RelevanceCheck(False, purpose, PURPOSE_SCORES["illustration"], "Illustration lacks clear educational purpose")
    return RelevanceCheck(True, purpose, PURPOSE_SCORES[purpose], f"{purpose} is instructionally useful")


def get_cap(richness: str, question_count: int) -> int:
    if richness == "rich":
        return min(question_count, MAX_RICH_IMAGES)
    return RICHNESS_CAPS.get(richness, RICHNESS_CAPS["minimal"])


def validate_placement_count(placement_count: int, richness: str, question_count: int) -> PlacementCountCheck:
    cap = get_cap(richness, question_count)
    if placement_count <= cap:
        return PlacementCountCheck(valid=True, cap=cap)
    return PlacementCountCheck(
        valid=False,
        cap=cap,
        message=f"Too many placements ({placement_count}) for richness level '{richness}' (cap: {cap})",
    )


def filter_and_cap_placements(
    placements: Sequence[ImagePlacement],
    richness: str,
    question_count: int,
) -> FilterResult:
    """Keep the most instructionally useful placements, up to the richness cap.

    Selection is by score; accepted placements are returned in document order.
    """
    cap = get_cap(richness, question_count)
    if not placements:
        return FilterResult(stats=FilterStats(cap=cap))

    checks = [check_relevance(placement) for placement in placements]
    # sorted() is stable, so equal scores keep document order
    ranked = sorted(range(len(placements)), key=lambda idx: -checks[idx].score)

    accepted_idx: set[int] = set()
    for idx in ranked:
        if checks[idx].approved and len(accepted_idx) < cap:
            accepted_idx.add(idx)

    accepted = [p for idx, p in enumerate(placements) if idx in accepted_idx]
    rejected = [placements[idx] for idx in ranked if idx not in accepted_idx]
    by_purpose = dict(Counter(check.purpose for check in checks))
    logger.info(
        "Filtered %d placements: %d accepted, %d rejected (cap %d)",
        len(placements),
        len(accepted),
        len(rejected),
        cap,
    )
    return FilterResult(
        accepted=accepted,
        rejected=rejected,
        stats=FilterStats(
            total=len(placements),
            accepted=len(accepted),
            rejected=len(rejected),
            cap=cap,
            by_purpose=by_purpose,
        ),
    )


def get_filter_summary(result: FilterResult) -> str:
    breakdown = ", ".join(f"{purpose}: {count}" for purpose, count in result.stats.by_purpose.items())
    return (
        f"Accepted {result.stats.accepted}/{result.stats.total} placements "
        f"(cap: {result.stats.cap}). Purposes: {breakdown or 'none'}"
    )
