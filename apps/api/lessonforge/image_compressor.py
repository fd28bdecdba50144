from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Sequence

from PIL import Image, UnidentifiedImageError

from .schemas import CompressedImage, ImageResult


logger = logging.getLogger(__name__)

MB = 1024 * 1024

SIZE_THRESHOLDS = {
    "minimal": 5 * MB,
    "standard": 5 * MB,
    "rich": 12 * MB,
}

TARGET_DIMENSIONS = {
    "small": (256, 256),
    "medium": (400, 300),
    "wide": (600, 300),
    # legacy alias
    "large": (400, 300),
}

DEFAULT_QUALITY = 85

# Lower rank is dropped first. Purposes not listed are instructional and rank highest.
PURPOSE_PRIORITY = {"decoration": 0, "illustration": 1, "diagram": 2}
INSTRUCTIONAL_PRIORITY = 3


@dataclass
class SizeValidationResult:
    valid: bool
    total_bytes: int
    max_allowed: int
    percent_used: float
    recommendation: Optional[str] = None


@dataclass
class CompressionStats:
    total_original: int
    total_compressed: int
    average_ratio: float
    placeholder_count: int


def is_placeholder(image: ImageResult) -> bool:
    return image.is_placeholder


def calculate_quality(image_count: int, richness: str) -> int:
    base = 80 if richness == "rich" else DEFAULT_QUALITY
    if image_count > 8:
        return max(60, base - 15)
    if image_count > 5:
        return max(70, base - 10)
    if image_count > 3:
        return max(75, base - 5)
    return base


def infer_size_from_dimensions(width: int, height: int) -> str:
    if width <= 300 and height <= 300:
        return "small"
    if width > height * 1.5:
        return "wide"
    return "medium"


def _encode(img: Image.Image, fmt: str, quality: int) -> bytes:
    buf = BytesIO()
    if fmt == "WEBP":
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA")
        img.save(buf, "WEBP", quality=quality, method=4)
    else:
        if img.mode in ("RGBA", "LA", "P"):
            rgba = img.convert("RGBA")
            flat = Image.new("RGB", rgba.size, (255, 255, 255))
            flat.paste(rgba, mask=rgba.split()[-1])
            img = flat
        elif img.mode != "RGB":
            img = img.convert("RGB")
        img.save(buf, "JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def compress_image(image: ImageResult, *, quality: int = DEFAULT_QUALITY, size: Optional[str] = None) -> CompressedImage:
    """Resize ``image`` into its size bucket and re-encode it.

    WebP is tried first; JPEG replaces it only when WebP did not shrink the
    original and JPEG is smaller still. Placeholders pass through.
    """
    if image.is_placeholder:
        nominal = len(image.base64_data)
        return CompressedImage(
            **image.model_dump(),
            original_size=nominal,
            compressed_size=nominal,
            compression_ratio=1.0,
        )

    max_width, max_height = TARGET_DIMENSIONS.get(size or "", TARGET_DIMENSIONS["medium"])
    try:
        raw = base64.b64decode(image.base64_data, validate=True)
    except (binascii.Error, ValueError):
        logger.error("Image for %s is not valid base64; leaving it uncompressed", image.placement_id)
        nominal = len(image.base64_data) * 3 // 4
        return CompressedImage(**image.model_dump(), original_size=nominal, compressed_size=nominal)

    original_size = len(raw)
    try:
        with Image.open(BytesIO(raw)) as opened:
            img = opened.copy()
        img.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
        output = _encode(img, "WEBP", quality)
        media_type = "image/webp"
        if len(output) >= original_size:
            jpeg = _encode(img, "JPEG", quality)
            if len(jpeg) < len(output):
                output = jpeg
                media_type = "image/jpeg"
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.error("Compression failed for %s: %s", image.placement_id, exc)
        return CompressedImage(**image.model_dump(), original_size=original_size, compressed_size=original_size)

    compressed_size = len(output)
    logger.debug(
        "Compressed %.1fKB -> %.1fKB (%s)",
        original_size / 1024,
        compressed_size / 1024,
        media_type,
    )
    return CompressedImage(
        base64_data=base64.b64encode(output).decode("ascii"),
        media_type=media_type,
        width=img.width,
        height=img.height,
        placement_id=image.placement_id,
        original_size=original_size,
        compressed_size=compressed_size,
        compression_ratio=compressed_size / original_size if original_size else 1.0,
    )


async def compress_images(
    images: Sequence[ImageResult],
    richness: str = "standard",
    sizes: Optional[Sequence[Optional[str]]] = None,
) -> list[CompressedImage]:
    if not images:
        return []
    quality = calculate_quality(len(images), richness)
    tasks = []
    for idx, image in enumerate(images):
        size = sizes[idx] if sizes is not None and idx < len(sizes) else None
        if not size:
            size = infer_size_from_dimensions(image.width, image.height)
        tasks.append(asyncio.to_thread(compress_image, image, quality=quality, size=size))
    compressed = list(await asyncio.gather(*tasks))
    stats = get_compression_stats(compressed)
    logger.info(
        "Compressed %d images at quality %d: %.2fMB -> %.2fMB",
        len(compressed),
        quality,
        stats.total_original / MB,
        stats.total_compressed / MB,
    )
    return compressed


def _real_bytes(images: Sequence[CompressedImage]) -> int:
    return sum(image.compressed_size for image in images if not is_placeholder(image))


def validate_output_size(images: Sequence[CompressedImage], richness: str) -> SizeValidationResult:
    max_allowed = SIZE_THRESHOLDS.get(richness, SIZE_THRESHOLDS["standard"])
    total = _real_bytes(images)
    percent = total / max_allowed * 100
    recommendation = None
    if total > max_allowed:
        over_by = total - max_allowed
        real_count = sum(1 for image in images if not is_placeholder(image))
        average = total / real_count if real_count else 0
        drop = math.ceil(over_by / average) if average else 0
        recommendation = (
            f"Output exceeds limit by {over_by / MB:.2f}MB. "
            f"Consider dropping {drop} lowest-priority images or reducing quality."
        )
    elif percent > 80:
        recommendation = f"Output is at {percent:.0f}% of limit. Consider reducing image count for safety margin."
    return SizeValidationResult(
        valid=total <= max_allowed,
        total_bytes=total,
        max_allowed=max_allowed,
        percent_used=percent,
        recommendation=recommendation,
    )


def purpose_priority(purpose: Optional[str]) -> int:
    if not purpose:
        return PURPOSE_PRIORITY["decoration"]
    return PURPOSE_PRIORITY.get(purpose, INSTRUCTIONAL_PRIORITY)


def reduce_to_fit_threshold(
    images: Sequence[CompressedImage],
    purposes: Sequence[Optional[str]],
    richness: str,
) -> list[CompressedImage]:
    """Drop lowest-priority images until the batch fits the richness ceiling.

    Survivors keep their original relative order.
    """
    max_allowed = SIZE_THRESHOLDS.get(richness, SIZE_THRESHOLDS["standard"])
    total = _real_bytes(images)
    if total <= max_allowed:
        return list(images)

    candidates = [
        idx for idx, image in enumerate(images) if not is_placeholder(image)
    ]
    candidates.sort(key=lambda idx: purpose_priority(purposes[idx] if idx < len(purposes) else None))

    removed: set[int] = set()
    for idx in candidates:
        if total <= max_allowed:
            break
        total -= images[idx].compressed_size
        removed.add(idx)

    logger.info(
        "Dropped %d image(s) to fit within %.0fMB (%s)",
        len(removed),
        max_allowed / MB,
        richness,
    )
    return [image for idx, image in enumerate(images) if idx not in removed]


def get_compression_stats(images: Sequence[CompressedImage]) -> CompressionStats:
    real = [image for image in images if not is_placeholder(image)]
    total_original = sum(image.original_size for image in real)
    total_compressed = sum(image.compressed_size for image in real)
    return CompressionStats(
        total_original=total_original,
        total_compressed=total_compressed,
        average_ratio=total_compressed / total_original if total_original else 1.0,
        placeholder_count=len(images) - len(real),
    )
