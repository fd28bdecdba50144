from __future__ import annotations

import asyncio
import base64
import html
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional

from .errors import ProviderConfigurationError
from .image_cache import ImageCache, fingerprint
from .image_providers import ImageProvider
from .resilience import RetryPolicy, attempt_with_policy
from .schemas import PLACEHOLDER_PREFIX, ImagePlacement, ImageRequest, ImageResult, ImageStats


logger = logging.getLogger(__name__)

FALLBACK_STYLE = "simple_icons"

STYLE_PROMPTS = {
    "friendly_cartoon": (
        "friendly cartoon style, colorful, child-appropriate, simple shapes, "
        "happy expressions, educational illustration, no text"
    ),
    "simple_icons": (
        "simple flat icon style, minimal colors (2-3 colors max), clean lines, "
        "educational symbol, no text, vector-like"
    ),
    "black_white": (
        "black and white line art, coloring book style, clear outlines, "
        "no shading, suitable for printing, no text"
    ),
}

GRADE_SAFETY = {
    "K": "extremely simple and friendly, suitable for 5-6 year olds, no scary elements",
    "1": "very simple and friendly, suitable for 6-7 year olds",
    "2": "simple and friendly, suitable for 7-8 year olds",
    "3": "friendly and engaging, suitable for 8-9 year olds",
    "4": "appropriate for 9-10 year olds, educational focus",
    "5": "appropriate for 10-11 year olds, educational focus",
    "6": "appropriate for 11-12 year olds, educational focus",
}

ProgressCallback = Callable[[int, int, ImageStats], None]


@dataclass
class ImageContext:
    grade: str = "3"
    subject: str = "general"
    theme: Optional[str] = None


@dataclass
class BatchGenerationResult:
    images: list[ImageResult] = field(default_factory=list)
    stats: ImageStats = field(default_factory=ImageStats)


def build_image_prompt(description: str, style: str, context: Optional[ImageContext] = None) -> str:
    parts = [f"Educational illustration: {description}", STYLE_PROMPTS.get(style, STYLE_PROMPTS["friendly_cartoon"])]
    if context is not None:
        parts.append(GRADE_SAFETY.get(context.grade, GRADE_SAFETY["3"]))
        if context.theme:
            parts.append(f"Theme: {context.theme}")
    parts.append("safe for children, no scary or inappropriate content")
    parts.append("no brand logos, no copyrighted characters")
    parts.append("high contrast, suitable for printing")
    return ". ".join(parts)


def create_placeholder_image(description: str, placement_id: Optional[str] = None) -> ImageResult:
    label = html.escape(description[:30], quote=True)
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" width="200" height="150" viewBox="0 0 200 150">'
        '<rect width="200" height="150" fill="#f0f0f0" stroke="#ccc" stroke-width="2"/>'
        '<text x="100" y="70" text-anchor="middle" font-family="Arial" font-size="12" fill="#666">'
        f"[Image: {label}...]"
        "</text>"
        '<text x="100" y="90" text-anchor="middle" font-family="Arial" font-size="10" fill="#999">'
        "(placeholder)"
        "</text>"
        "</svg>"
    )
    encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
    return ImageResult(
        base64_data=f"{PLACEHOLDER_PREFIX}{encoded}",
        media_type="image/svg+xml",
        width=200,
        height=150,
        placement_id=placement_id,
    )


def create_image_requests_from_placements(placements: Iterable[ImagePlacement], style: str) -> list[ImageRequest]:
    return [
        ImageRequest(
            prompt=placement.description,
            style=style,
            size=placement.size,
            placement_id=placement.after_item_id,
        )
        for placement in placements
    ]


class ImageGenerator:
    """Cache-first, resilient image generation on top of an :class:`ImageProvider`.

    Each request ends as a cached image, a freshly generated one (possibly in
    the fallback style) or a placeholder. Only provider misconfiguration
    escapes as an exception.
    """

    def __init__(
        self,
        provider: ImageProvider,
        cache: ImageCache,
        *,
        policy: Optional[RetryPolicy] = None,
        batch_delay: float = 0.5,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.policy = policy or RetryPolicy()
        self.batch_delay = batch_delay

    def cache_key(self, request: ImageRequest, context: Optional[ImageContext] = None, *, style: Optional[str] = None) -> str:
        context = context or ImageContext()
        return fingerprint(
            style=style or request.style,
            grade=context.grade,
            subject=context.subject,
            size=request.size,
            description=request.prompt,
            theme=context.theme,
        )

    def _is_fatal(self, exc: BaseException) -> bool:
        return isinstance(exc, ProviderConfigurationError) or self.provider.is_content_policy_error(exc)

    async def _call_provider(
        self,
        request: ImageRequest,
        context: Optional[ImageContext],
        style: str,
        policy: RetryPolicy,
    ) -> ImageResult:
        prompt = build_image_prompt(request.prompt, style, context)

        async def operation() -> ImageResult:
            image = await self.provider.generate_image(prompt, request.size, style)
            return ImageResult(
                base64_data=image.base64_data,
                media_type=image.media_type,
                width=image.width,
                height=image.height,
                placement_id=request.placement_id,
            )

        return await attempt_with_policy(
            operation,
            policy,
            is_fatal=self._is_fatal,
            label=f"image {request.prompt[:30]!r}",
        )

    async def _resolve(
        self,
        request: ImageRequest,
        context: Optional[ImageContext],
        policy: RetryPolicy,
    ) -> tuple[ImageResult, str]:
        key = self.cache_key(request, context)
        cached = self.cache.get(key)
        if cached is not None:
            return cached.model_copy(update={"placement_id": request.placement_id}), "cached"

        try:
            result = await self._call_provider(request, context, request.style, policy)
        except ProviderConfigurationError:
            raise
        except Exception as exc:  # noqa: BLE001
            if self.provider.is_content_policy_error(exc):
                logger.warning("Content policy rejected %r; using placeholder", request.prompt[:30])
                return create_placeholder_image(request.prompt, request.placement_id), "failed"
            last_exc: Exception = exc
        else:
            self.cache.set(key, result, description=request.prompt)
            return result, "generated"

        if request.style != FALLBACK_STYLE:
            logger.warning("Retrying %r with %s style", request.prompt[:30], FALLBACK_STYLE)
            try:
                result = await self._call_provider(
                    request,
                    context,
                    FALLBACK_STYLE,
                    replace(policy, max_retries=0),
                )
            except ProviderConfigurationError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
            else:
                self.cache.set(self.cache_key(request, context, style=FALLBACK_STYLE), result, description=request.prompt)
                return result, "generated"

        logger.error("All attempts failed for %r; using placeholder", request.prompt[:30], exc_info=last_exc)
        return create_placeholder_image(request.prompt, request.placement_id), "failed"

    async def generate_image(
        self,
        request: ImageRequest,
        context: Optional[ImageContext] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> ImageResult:
        result, _ = await self._resolve(request, context, policy or self.policy)
        return result

    async def generate_batch_images_with_stats(
        self,
        requests: list[ImageRequest],
        context: Optional[ImageContext] = None,
        on_progress: Optional[ProgressCallback] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> BatchGenerationResult:
        """Generate images one at a time, in request order.

        ``policy`` overrides the generator's retry policy for this batch only.
        """
        policy = policy or self.policy
        batch = BatchGenerationResult(stats=ImageStats(total=len(requests)))
        if not requests:
            return batch

        logger.info("Generating batch of %d images with %s", len(requests), self.provider.name)
        for idx, request in enumerate(requests):
            result, source = await self._resolve(request, context, policy)
            batch.images.append(result)
            if source == "cached":
                batch.stats.cached += 1
            elif source == "generated":
                batch.stats.generated += 1
            else:
                batch.stats.failed += 1
            if on_progress is not None:
                on_progress(idx + 1, len(requests), batch.stats.model_copy())
            if source != "cached" and idx < len(requests) - 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        logger.info(
            "Batch complete: %d generated, %d cached, %d failed (cache hit rate %.0f%%)",
            batch.stats.generated,
            batch.stats.cached,
            batch.stats.failed,
            self.cache.stats().hit_rate * 100,
        )
        return batch

    async def generate_batch_images(
        self,
        requests: list[ImageRequest],
        context: Optional[ImageContext] = None,
        on_progress: Optional[ProgressCallback] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> list[ImageResult]:
        batch = await self.generate_batch_images_with_stats(requests, context, on_progress, policy)
        return batch.images


def is_image_generation_available(provider: ImageProvider) -> bool:
    return provider.is_available()
