from __future__ import annotations

from typing import Iterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Grade = Literal["K", "1", "2", "3", "4", "5", "6"]
VisualRichness = Literal["minimal", "standard", "rich"]
VisualStyle = Literal["friendly_cartoon", "simple_icons", "black_white"]
Difficulty = Literal["easy", "medium", "hard"]
Severity = Literal["error", "warning"]

PLACEHOLDER_PREFIX = "placeholder:"
FALLBACK_ANSWER = "[Answer to be determined]"


class CamelModel(BaseModel):
    """Models exchanged with the language model and API clients use camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


# Plan


class PlanItem(CamelModel):
    # Models sometimes attach visual fields to items; they are kept as extras
    # so the validator can report and strip them.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="allow",
    )

    id: str = ""
    question_text: str = ""
    question_type: str = "short_answer"
    options: Optional[list[str]] = None
    correct_answer: str = ""
    explanation: Optional[str] = None
    points: Optional[float] = None


class PlanSection(CamelModel):
    id: str = ""
    type: str = "questions"
    title: Optional[str] = None
    instructions: Optional[str] = None
    items: list[PlanItem] = Field(default_factory=list)


class PlanHeader(CamelModel):
    title: str
    has_name_line: bool = True
    has_date_line: bool = True
    instructions: str = ""


class PlanStructure(CamelModel):
    header: PlanHeader
    sections: list[PlanSection] = Field(default_factory=list)


class PlanMetadata(CamelModel):
    title: str
    grade: str = ""
    subject: str = ""
    topic: str = ""
    learning_objectives: list[str] = Field(default_factory=list)
    estimated_time: str = "15-20 minutes"


class PlanStyle(CamelModel):
    difficulty: str = "medium"
    visual_style: str = "minimal"
    theme: Optional[str] = None


class ImagePlacement(CamelModel):
    after_item_id: str = ""
    description: str = ""
    purpose: str = "illustration"
    size: str = "medium"
    style: Optional[str] = None


class Plan(CamelModel):
    version: str = "1.0"
    metadata: PlanMetadata
    structure: PlanStructure
    style: PlanStyle = Field(default_factory=PlanStyle)
    visual_placements: list[ImagePlacement] = Field(default_factory=list)

    def iter_items(self) -> Iterator[PlanItem]:
        for section in self.structure.sections:
            yield from section.items

    def item_ids(self) -> set[str]:
        return {item.id for item in self.iter_items() if item.id}

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Validation


class ValidationIssue(CamelModel):
    severity: Severity
    field: str
    message: str
    suggestion: Optional[str] = None


class ValidationResult(CamelModel):
    valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    auto_repairable: bool = False

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]


class ValidationRequirements(CamelModel):
    min_questions: int = 1
    max_questions: int = 50
    grade: str = "3"
    subject: str = ""
    require_answers: bool = True


# Images


class ImageRequest(CamelModel):
    prompt: str
    style: VisualStyle = "friendly_cartoon"
    size: str = "medium"
    placement_id: Optional[str] = None


class ImageResult(CamelModel):
    base64_data: str
    media_type: str = "image/png"
    width: int
    height: int
    placement_id: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.base64_data.startswith(PLACEHOLDER_PREFIX)


class CompressedImage(ImageResult):
    original_size: int
    compressed_size: int
    compression_ratio: float = 1.0


class ImageStats(CamelModel):
    total: int = 0
    generated: int = 0
    cached: int = 0
    failed: int = 0


# Quality gate

QualityCategory = Literal[
    "html_structure",
    "question_count",
    "content_quality",
    "print_friendly",
    "answer_key",
    "image_count",
    "image_size",
    "image_missing",
]


class QualityIssue(CamelModel):
    category: QualityCategory
    severity: Severity
    message: str


class QualityResult(CamelModel):
    passed: bool
    score: int = Field(ge=0, le=100)
    issues: list[QualityIssue] = Field(default_factory=list)
    should_charge: bool


class QualityRequirements(CamelModel):
    expected_question_count: int
    require_answer_key: bool = True
    require_print_friendly: bool = True
    expected_image_count: Optional[int] = None
    visual_richness: Optional[VisualRichness] = None


# Request context


class VisualSettings(CamelModel):
    include_visuals: bool = True
    richness: VisualRichness = "minimal"
    style: VisualStyle = "friendly_cartoon"
    theme: Optional[str] = None


class ProjectOptions(CamelModel):
    question_count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = "medium"
    include_answer_key: bool = True
    include_lesson_plan: bool = True


class InspirationContext(CamelModel):
    design_items: list[str] = Field(default_factory=list)
    content_items: list[str] = Field(default_factory=list)


class GenerationContext(CamelModel):
    prompt: str
    grade: Grade
    subject: str
    options: ProjectOptions = Field(default_factory=ProjectOptions)
    visual_settings: VisualSettings = Field(default_factory=VisualSettings)
    inspiration: Optional[InspirationContext] = None
