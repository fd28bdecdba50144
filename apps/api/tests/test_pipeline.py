from __future__ import annotations

import json
from dataclasses import replace

import pytest
from conftest import ContentPolicyViolation, FakeImageProvider, ScriptedContentProvider, make_plan_data

from lessonforge.errors import ProviderConfigurationError
from lessonforge.pipeline import build_services, run_generation
from lessonforge.schemas import FALLBACK_ANSWER, GenerationContext, ProjectOptions, VisualSettings


@pytest.mark.asyncio
async def test_full_generation_with_mock_providers(context, services) -> None:
    steps = []

    outcome = await run_generation(context, services, steps.append)

    assert not outcome.used_fallback_plan
    assert not outcome.was_repaired
    assert outcome.validation.valid
    assert outcome.worksheet_html.lstrip().startswith("<!DOCTYPE html>")
    assert outcome.worksheet_html.count('class="question question-') == 5
    assert "img-small" in outcome.worksheet_html
    assert "img-wide" in outcome.worksheet_html
    assert "ANSWER KEY" in outcome.answer_key_html
    assert "Lesson Plan" in outcome.lesson_plan_html
    assert outcome.image_stats.total == 2
    assert outcome.image_stats.generated == 2
    assert outcome.quality.passed
    assert outcome.billing.should_charge
    assert outcome.billing.credits > 0
    assert outcome.placement_summary.startswith("Accepted 2/2 placements (cap: 5)")

    names = [step.step for step in steps]
    assert names[0] == "planning"
    assert names[-1] == "complete"
    assert "images" in names and "compressing" in names
    progress = [step.progress for step in steps]
    assert progress == sorted(progress)
    assert progress[-1] == 100


@pytest.mark.asyncio
async def test_second_run_uses_image_cache(context, services) -> None:
    await run_generation(context, services)
    outcome = await run_generation(context, services)

    assert outcome.image_stats.cached == 2
    assert outcome.image_stats.generated == 0
    assert services.image_cache.stats().hits == 2


@pytest.mark.asyncio
async def test_unusable_plan_output_falls_back_and_is_not_charged(context, services) -> None:
    services = replace(
        services,
        content_provider=ScriptedContentProvider(["not a plan", "still not a plan"]),
    )

    outcome = await run_generation(context, services)

    assert outcome.used_fallback_plan
    assert not outcome.was_repaired
    assert "[Question 1 - Unable to generate specific content]" in outcome.worksheet_html
    assert outcome.plan.visual_placements == []
    assert not outcome.billing.should_charge
    assert outcome.billing.credits == 0


@pytest.mark.asyncio
async def test_missing_answer_is_repaired(context, services) -> None:
    broken = make_plan_data(5)
    broken["structure"]["sections"][0]["items"][3]["correctAnswer"] = FALLBACK_ANSWER
    fixed = make_plan_data(5)
    provider = ScriptedContentProvider([json.dumps(broken), json.dumps(fixed)])

    outcome = await run_generation(context, replace(services, content_provider=provider))

    assert outcome.was_repaired
    assert outcome.validation.valid
    assert len(provider.prompts) == 2


@pytest.mark.asyncio
async def test_failed_images_become_placeholders(context, services) -> None:
    provider = FakeImageProvider([ContentPolicyViolation("no"), ContentPolicyViolation("no")])

    outcome = await run_generation(context, replace(services, image_provider=provider))

    assert outcome.image_stats.failed == 2
    assert outcome.image_stats.generated == 0
    assert "data:image/svg+xml;base64," in outcome.worksheet_html
    categories = [issue.category for issue in outcome.quality.issues]
    assert "image_missing" in categories
    assert "image_size" not in categories
    assert len(services.image_cache) == 0


@pytest.mark.asyncio
async def test_visuals_disabled_skips_images(services) -> None:
    context = GenerationContext(
        prompt="Subtraction facts",
        grade="2",
        subject="Math",
        options=ProjectOptions(question_count=4, include_lesson_plan=False),
        visual_settings=VisualSettings(include_visuals=False),
    )

    outcome = await run_generation(context, services)

    assert outcome.plan.visual_placements == []
    assert outcome.image_stats.total == 0
    assert "worksheet-image" not in outcome.worksheet_html
    assert outcome.lesson_plan_html == ""
    assert outcome.placement_summary is None


@pytest.mark.asyncio
async def test_configuration_errors_propagate(context, services) -> None:
    provider = ScriptedContentProvider([ProviderConfigurationError("bad key")])
    with pytest.raises(ProviderConfigurationError):
        await run_generation(context, replace(services, content_provider=provider))


def test_build_services_from_settings(test_settings) -> None:
    services = build_services(test_settings)
    assert services.content_provider.name == "mock"
    assert services.image_provider.name == "mock"
    assert services.image_cache.max_entries == 1000
    policy = services.image_policy()
    assert policy.retry_delay == 0
    assert services.image_generator().batch_delay == 0
