from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image, ImageDraw

from .config import Settings
from .errors import ProviderConfigurationError, ProviderError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizeMapping:
    native_size: str
    width: int
    height: int

    @property
    def native_dimensions(self) -> tuple[int, int]:
        width, height = self.native_size.split("x")
        return int(width), int(height)


SIZE_MAP = {
    "small": SizeMapping("1024x1024", 256, 256),
    "medium": SizeMapping("1024x1024", 400, 300),
    "wide": SizeMapping("1792x1024", 600, 300),
    # legacy alias
    "large": SizeMapping("1024x1024", 400, 300),
}
DEFAULT_SIZE = "medium"


@dataclass
class ProviderImage:
    base64_data: str
    media_type: str
    width: int
    height: int


class ImageProvider:
    name: str = "base"

    def size_mapping(self, logical_size: str) -> SizeMapping:
        return SIZE_MAP.get(logical_size, SIZE_MAP[DEFAULT_SIZE])

    async def generate_image(self, prompt: str, logical_size: str, style: str) -> ProviderImage:
        raise NotImplementedError

    def is_available(self) -> bool:
        return True

    def is_content_policy_error(self, exc: BaseException) -> bool:
        return False

    async def aclose(self) -> None:
        return None


def _draw_png(prompt: str, width: int, height: int) -> bytes:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    background = (200 + digest[0] % 56, 200 + digest[1] % 56, 200 + digest[2] % 56)
    accent = (digest[3] % 160, digest[4] % 160, digest[5] % 160)
    img = Image.new("RGB", (width, height), background)
    draw = ImageDraw.Draw(img)
    margin = min(width, height) // 6
    draw.ellipse((margin, margin, width - margin, height - margin), outline=accent, width=4)
    draw.rectangle((width // 3, height // 3, 2 * width // 3, 2 * height // 3), fill=accent)
    buf = BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


class MockImageProvider(ImageProvider):
    """Draws a small deterministic PNG per prompt. For development and tests."""

    name = "mock"

    async def generate_image(self, prompt: str, logical_size: str, style: str) -> ProviderImage:
        mapping = self.size_mapping(logical_size)
        png = await asyncio.to_thread(_draw_png, prompt, mapping.width, mapping.height)
        return ProviderImage(
            base64_data=base64.b64encode(png).decode("ascii"),
            media_type="image/png",
            width=mapping.width,
            height=mapping.height,
        )


class OpenAIImageProvider(ImageProvider):
    name = "openai"

    def __init__(self, *, api_key: Optional[str], model: str = "dall-e-3", timeout: float = 90.0, client=None) -> None:
        self.api_key = api_key
        self.model = model
        if client is None and api_key:
            from openai import AsyncOpenAI
            import httpx
            import certifi

            client = AsyncOpenAI(
                api_key=api_key,
                max_retries=0,
                http_client=httpx.AsyncClient(
                    timeout=httpx.Timeout(timeout, connect=10.0),
                    verify=certifi.where(),
                ),
            )
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIImageProvider":
        if not settings.openai_api_key:
            raise ProviderConfigurationError("OPENAI_API_KEY is required for the openai image provider")
        return cls(
            api_key=settings.openai_api_key,
            model=settings.image_model,
            timeout=settings.image_timeout_seconds,
        )

    def is_available(self) -> bool:
        return self.client is not None

    async def generate_image(self, prompt: str, logical_size: str, style: str) -> ProviderImage:
        import openai

        if self.client is None:
            raise ProviderConfigurationError("OPENAI_API_KEY is required for image generation")
        mapping = self.size_mapping(logical_size)
        try:
            response = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                n=1,
                size=mapping.native_size,
                response_format="b64_json",
                quality="standard",
                style="vivid" if style == "friendly_cartoon" else "natural",
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderConfigurationError(f"OpenAI rejected the image credentials: {exc}") from exc
        if not response.data or not response.data[0].b64_json:
            raise ProviderError("No image data in response")
        width, height = mapping.native_dimensions
        return ProviderImage(
            base64_data=response.data[0].b64_json,
            media_type="image/png",
            width=width,
            height=height,
        )

    def is_content_policy_error(self, exc: BaseException) -> bool:
        import openai

        return isinstance(exc, openai.APIError) and getattr(exc, "code", None) == "content_policy_violation"

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()


IMAGE_PROVIDERS = ("mock", "openai")


def create_image_provider(settings: Settings) -> ImageProvider:
    provider = settings.image_provider.lower().strip()
    if provider not in IMAGE_PROVIDERS:
        raise ProviderConfigurationError(
            f"Unknown IMAGE_PROVIDER {settings.image_provider!r}; expected one of {', '.join(IMAGE_PROVIDERS)}"
        )
    if provider == "mock":
        if settings.is_production():
            raise ProviderConfigurationError("The mock image provider cannot be used in production")
        return MockImageProvider()
    return OpenAIImageProvider.from_settings(settings)
