from __future__ import annotations

import base64
from io import BytesIO
from typing import Any, Callable, Optional

import pytest
from PIL import Image

from lessonforge.config import Settings
from lessonforge.image_cache import ImageCache
from lessonforge.image_providers import ImageProvider, MockImageProvider, ProviderImage
from lessonforge.llm import ContentProvider, ContentResponse, MockContentProvider
from lessonforge.pipeline import GenerationServices
from lessonforge.schemas import GenerationContext, Plan, ProjectOptions, VisualSettings


class ContentPolicyViolation(Exception):
    pass


class ScriptedContentProvider(ContentProvider):
    """Returns queued responses in order; queued exceptions are raised."""

    name = "scripted"

    def __init__(self, responses: Optional[list[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    async def generate_content(self, prompt: str, *, max_tokens: int = 4096) -> ContentResponse:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("unexpected model call")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return ContentResponse(content=response, input_tokens=100, output_tokens=200)


def make_png_b64(width: int = 64, height: int = 64, color: tuple[int, int, int] = (200, 30, 30)) -> str:
    img = Image.new("RGB", (width, height), color)
    buf = BytesIO()
    img.save(buf, "PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class FakeImageProvider(ImageProvider):
    """Scripted image provider. Queue exceptions to simulate failures."""

    name = "fake"

    def __init__(self, script: Optional[list[BaseException]] = None, *, width: int = 64, height: int = 64) -> None:
        self.script = list(script or [])
        self.calls: list[tuple[str, str, str]] = []
        self.width = width
        self.height = height

    async def generate_image(self, prompt: str, logical_size: str, style: str) -> ProviderImage:
        self.calls.append((prompt, logical_size, style))
        if self.script:
            raise self.script.pop(0)
        return ProviderImage(
            base64_data=make_png_b64(self.width, self.height),
            media_type="image/png",
            width=self.width,
            height=self.height,
        )

    def is_content_policy_error(self, exc: BaseException) -> bool:
        return isinstance(exc, ContentPolicyViolation)


def make_plan_data(
    count: int = 5,
    *,
    placements: Optional[list[dict]] = None,
    title: str = "Adding Within 10",
) -> dict:
    items = [
        {
            "id": f"q{i}",
            "questionText": f"Mia has {i} apples and gets 2 more. How many apples now?",
            "questionType": "short_answer",
            "correctAnswer": str(i + 2),
            "explanation": f"Start at {i} and count on two.",
        }
        for i in range(1, count + 1)
    ]
    return {
        "version": "1.0",
        "metadata": {
            "title": title,
            "grade": "1",
            "subject": "Math",
            "topic": "Addition",
            "learningObjectives": ["Add within 10"],
        },
        "structure": {
            "header": {
                "title": title,
                "hasNameLine": True,
                "hasDateLine": True,
                "instructions": "Solve each problem.",
            },
            "sections": [{"id": "s1", "type": "questions", "title": "Practice", "items": items}],
        },
        "visualPlacements": placements or [],
    }


@pytest.fixture
def plan_data() -> Callable[..., dict]:
    return make_plan_data


@pytest.fixture
def make_plan() -> Callable[..., Plan]:
    def _make(count: int = 5, **kwargs: Any) -> Plan:
        return Plan.model_validate(make_plan_data(count, **kwargs))

    return _make


@pytest.fixture
def context() -> GenerationContext:
    return GenerationContext(
        prompt="Adding within 10 with pictures",
        grade="1",
        subject="Math",
        options=ProjectOptions(question_count=5),
        visual_settings=VisualSettings(include_visuals=True, richness="standard"),
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        llm_provider="mock",
        image_provider="mock",
        image_retry_delay_seconds=0,
        image_batch_delay_seconds=0,
        image_timeout_seconds=5,
    )


@pytest.fixture
def services(test_settings: Settings) -> GenerationServices:
    return GenerationServices(
        settings=test_settings,
        content_provider=MockContentProvider(),
        image_provider=MockImageProvider(),
        image_cache=ImageCache(max_entries=100),
    )
