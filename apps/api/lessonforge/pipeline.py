from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .assembler import assemble_all
from .billing import BillingDecision, build_billing_decision
from .config import Settings
from .errors import ProviderConfigurationError
from .image_cache import ImageCache
from .image_compressor import compress_images, get_compression_stats, reduce_to_fit_threshold, validate_output_size
from .image_generator import ImageContext, ImageGenerator, create_image_requests_from_placements
from .image_providers import ImageProvider, create_image_provider
from .llm import ContentProvider, TokenUsage, create_content_provider
from .planner import count_questions, create_fallback_plan, create_plan
from .quality_gate import get_quality_summary, run_quality_gate
from .relevance import filter_and_cap_placements, get_filter_summary, infer_purpose
from .resilience import RetryPolicy
from .schemas import (
    CamelModel,
    CompressedImage,
    GenerationContext,
    ImageStats,
    Plan,
    QualityRequirements,
    QualityResult,
    ValidationRequirements,
    ValidationResult,
)
from .validator import validate_and_repair


logger = logging.getLogger(__name__)


@dataclass
class PipelineProgress:
    step: str
    progress: int
    message: str


ProgressHandler = Callable[[PipelineProgress], None]


@dataclass
class GenerationServices:
    """Provider clients and the shared image cache, built once per process."""

    settings: Settings
    content_provider: ContentProvider
    image_provider: ImageProvider
    image_cache: ImageCache

    def image_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout=self.settings.image_timeout_seconds,
            max_retries=self.settings.image_max_retries,
            retry_delay=self.settings.image_retry_delay_seconds,
        )

    def image_generator(self) -> ImageGenerator:
        return ImageGenerator(
            self.image_provider,
            self.image_cache,
            policy=self.image_policy(),
            batch_delay=self.settings.image_batch_delay_seconds,
        )

    async def aclose(self) -> None:
        await self.content_provider.aclose()
        await self.image_provider.aclose()


def build_services(settings: Settings) -> GenerationServices:
    services = GenerationServices(
        settings=settings,
        content_provider=create_content_provider(settings),
        image_provider=create_image_provider(settings),
        image_cache=ImageCache(max_entries=settings.image_cache_max_entries),
    )
    logger.info(
        "Generation services ready: content=%s images=%s cache=%s",
        services.content_provider.name,
        services.image_provider.name,
        settings.image_cache_max_entries or "unbounded",
    )
    return services


class GenerationOutcome(CamelModel):
    worksheet_html: str
    answer_key_html: str
    lesson_plan_html: str
    plan: Plan
    validation: ValidationResult
    quality: QualityResult
    quality_summary: str
    image_stats: ImageStats
    billing: BillingDecision
    used_fallback_plan: bool = False
    was_repaired: bool = False
    placement_summary: Optional[str] = None


async def run_generation(
    context: GenerationContext,
    services: GenerationServices,
    on_progress: Optional[ProgressHandler] = None,
) -> GenerationOutcome:
    def report(step: str, progress: int, message: str) -> None:
        if on_progress is not None:
            on_progress(PipelineProgress(step=step, progress=progress, message=message))

    settings = services.settings
    options = context.options
    visuals = context.visual_settings
    usage = TokenUsage()

    report("planning", 5, "Creating worksheet plan")
    used_fallback = False
    try:
        plan = await create_plan(
            context,
            services.content_provider,
            max_tokens=settings.planner_max_tokens,
            usage=usage,
        )
    except ProviderConfigurationError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning("Plan generation failed, using fallback plan: %s", exc, exc_info=True)
        plan = create_fallback_plan(context)
        used_fallback = True

    report("validating", 20, "Validating plan")
    requirements = ValidationRequirements(
        min_questions=options.question_count,
        max_questions=options.question_count,
        grade=context.grade,
        subject=context.subject,
    )
    repair = await validate_and_repair(
        plan,
        requirements,
        services.content_provider,
        max_tokens=settings.repair_max_tokens,
        usage=usage,
    )
    plan = repair.plan

    placement_summary = None
    accepted = []
    if visuals.include_visuals and plan.visual_placements:
        filtered = filter_and_cap_placements(plan.visual_placements, visuals.richness, count_questions(plan))
        accepted = filtered.accepted
        placement_summary = get_filter_summary(filtered)
    plan = plan.model_copy(update={"visual_placements": accepted})

    images: list[CompressedImage] = []
    image_stats = ImageStats()
    if accepted:
        report("images", 35, f"Generating {len(accepted)} images")

        def on_image(done: int, total: int, stats: ImageStats) -> None:
            report("images", 35 + int(35 * done / total), f"Generated image {done} of {total}")

        batch = await services.image_generator().generate_batch_images_with_stats(
            create_image_requests_from_placements(accepted, visuals.style),
            ImageContext(grade=context.grade, subject=context.subject, theme=visuals.theme),
            on_image,
        )
        image_stats = batch.stats

        report("compressing", 75, "Compressing images")
        compressed = await compress_images(
            batch.images,
            visuals.richness,
            sizes=[placement.size for placement in accepted],
        )
        size_check = validate_output_size(compressed, visuals.richness)
        if size_check.recommendation:
            logger.warning(size_check.recommendation)
        images = reduce_to_fit_threshold(
            compressed,
            [infer_purpose(placement) for placement in accepted],
            visuals.richness,
        )
        stats = get_compression_stats(images)
        logger.info(
            "Kept %d of %d images, %d bytes, %d placeholder(s)",
            len(images),
            len(compressed),
            stats.total_compressed,
            stats.placeholder_count,
        )

    report("assembling", 85, "Assembling documents")
    assembled = assemble_all(
        plan,
        include_answer_key=options.include_answer_key,
        include_lesson_plan=options.include_lesson_plan,
        images=images,
    )

    report("quality", 95, "Running quality checks")
    quality = run_quality_gate(
        assembled.worksheet_html,
        plan,
        QualityRequirements(
            expected_question_count=options.question_count,
            require_answer_key=options.include_answer_key,
            require_print_friendly=True,
            expected_image_count=len(accepted),
            visual_richness=visuals.richness,
        ),
        assembled.answer_key_html,
        images=images if visuals.include_visuals else None,
        visual_settings=visuals,
    )
    summary = get_quality_summary(quality)
    # Placeholder questions are never billable.
    should_charge = quality.should_charge and not used_fallback
    billing = build_billing_decision(
        should_charge=should_charge,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        images_generated=image_stats.generated,
        summary=summary,
    )

    report("complete", 100, "Generation complete")
    logger.info(
        "Generation finished: score %d, charge=%s, fallback=%s, repaired=%s",
        quality.score,
        should_charge,
        used_fallback,
        repair.was_repaired,
    )
    return GenerationOutcome(
        worksheet_html=assembled.worksheet_html,
        answer_key_html=assembled.answer_key_html,
        lesson_plan_html=assembled.lesson_plan_html,
        plan=plan,
        validation=repair.validation,
        quality=quality,
        quality_summary=summary,
        image_stats=image_stats,
        billing=billing,
        used_fallback_plan=used_fallback,
        was_repaired=repair.was_repaired,
        placement_summary=placement_summary,
    )
