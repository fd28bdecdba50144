from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from lessonforge.config import Settings, load_settings
from lessonforge.errors import ProviderConfigurationError, ProviderError, RetryExhaustedError
from lessonforge.image_providers import (
    SIZE_MAP,
    MockImageProvider,
    OpenAIImageProvider,
    create_image_provider,
)
from lessonforge.llm import (
    MockContentProvider,
    OllamaContentProvider,
    OpenAICompatibleProvider,
    create_content_provider,
)
from lessonforge.resilience import RetryPolicy


FAST = RetryPolicy(timeout=5.0, max_retries=1, retry_delay=0)
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def _completion(content: str | None, prompt_tokens: int = 12, completion_tokens: int = 34) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    response.usage = MagicMock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


def _chat_client(side_effect) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=side_effect)
    client.close = AsyncMock()
    return client


def _auth_error() -> openai.AuthenticationError:
    request = httpx.Request("POST", OPENAI_URL)
    return openai.AuthenticationError(
        "invalid api key",
        response=httpx.Response(401, request=request),
        body=None,
    )


def test_api_key_is_cleaned() -> None:
    loaded = load_settings(_env_file=None, openai_api_key=' "Bearer sk-test-123" ')
    assert loaded.openai_api_key == "sk-test-123"


def test_production_detection() -> None:
    assert _settings(environment="Production").is_production()
    assert not _settings(environment="development").is_production()


def test_content_provider_selection() -> None:
    assert isinstance(create_content_provider(_settings(llm_provider="mock")), MockContentProvider)
    ollama = create_content_provider(_settings(llm_provider="ollama", ollama_base_url="http://gpu:11434/"))
    assert isinstance(ollama, OllamaContentProvider)
    assert ollama.model == "llama3.2"


def test_unknown_content_provider_is_a_configuration_error() -> None:
    with pytest.raises(ProviderConfigurationError, match="Unknown LLM_PROVIDER"):
        create_content_provider(_settings(llm_provider="claude-web"))


def test_openai_requires_key() -> None:
    with pytest.raises(ProviderConfigurationError, match="OPENAI_API_KEY"):
        create_content_provider(_settings(llm_provider="openai", openai_api_key=None))


def test_mock_providers_refused_in_production() -> None:
    with pytest.raises(ProviderConfigurationError):
        create_content_provider(_settings(environment="production"))
    with pytest.raises(ProviderConfigurationError):
        create_image_provider(_settings(environment="production"))


def test_image_provider_selection() -> None:
    assert isinstance(create_image_provider(_settings(image_provider="mock")), MockImageProvider)
    with pytest.raises(ProviderConfigurationError, match="Unknown IMAGE_PROVIDER"):
        create_image_provider(_settings(image_provider="midjourney"))
    with pytest.raises(ProviderConfigurationError):
        create_image_provider(_settings(image_provider="openai", openai_api_key=None))


@pytest.mark.asyncio
async def test_compatible_provider_returns_content_and_usage() -> None:
    client = _chat_client([_completion('{"version": "1.0"}')])
    provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-4o", policy=FAST, client=client)

    response = await provider.generate_content("make a plan", max_tokens=256)

    assert response.content == '{"version": "1.0"}'
    assert (response.input_tokens, response.output_tokens) == (12, 34)
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["max_tokens"] == 256
    assert kwargs["messages"][-1] == {"role": "user", "content": "make a plan"}


@pytest.mark.asyncio
async def test_compatible_provider_retries_empty_completion() -> None:
    client = _chat_client([_completion(""), _completion("ok")])
    provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-4o", policy=FAST, client=client)

    response = await provider.generate_content("hi")

    assert response.content == "ok"
    assert client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_compatible_provider_gives_up_after_policy() -> None:
    client = _chat_client([_completion(None), _completion(None)])
    provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-4o", policy=FAST, client=client)

    with pytest.raises(RetryExhaustedError) as excinfo:
        await provider.generate_content("hi")
    assert isinstance(excinfo.value.__cause__, ProviderError)


@pytest.mark.asyncio
async def test_rejected_credentials_are_not_retried() -> None:
    client = _chat_client([_auth_error()])
    provider = OpenAICompatibleProvider(api_key="sk-bad", model="gpt-4o", policy=FAST, client=client)

    with pytest.raises(ProviderConfigurationError):
        await provider.generate_content("hi")
    assert client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_mock_image_provider_draws_target_size() -> None:
    image = await MockImageProvider().generate_image("apples", "wide", "friendly_cartoon")
    assert (image.width, image.height) == (600, 300)
    assert image.media_type == "image/png"


def test_unknown_size_maps_to_medium() -> None:
    provider = MockImageProvider()
    assert provider.size_mapping("poster") == SIZE_MAP["medium"]
    assert SIZE_MAP["wide"].native_dimensions == (1792, 1024)


@pytest.mark.asyncio
async def test_openai_image_provider_requests_native_size() -> None:
    client = MagicMock()
    client.images.generate = AsyncMock(return_value=MagicMock(data=[MagicMock(b64_json="aW1n")]))
    provider = OpenAIImageProvider(api_key="sk-test", client=client)

    image = await provider.generate_image("a number line", "wide", "friendly_cartoon")

    kwargs = client.images.generate.await_args.kwargs
    assert kwargs["size"] == "1792x1024"
    assert kwargs["style"] == "vivid"
    assert kwargs["response_format"] == "b64_json"
    assert image.base64_data == "aW1n"
    assert (image.width, image.height) == (1792, 1024)


@pytest.mark.asyncio
async def test_openai_image_provider_without_data_raises() -> None:
    client = MagicMock()
    client.images.generate = AsyncMock(return_value=MagicMock(data=[]))
    provider = OpenAIImageProvider(api_key="sk-test", client=client)

    with pytest.raises(ProviderError, match="No image data"):
        await provider.generate_image("apples", "small", "simple_icons")
    assert client.images.generate.await_args.kwargs["style"] == "natural"


def test_openai_content_policy_detection() -> None:
    provider = OpenAIImageProvider(api_key=None)
    request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
    rejected = openai.APIError("rejected", request, body={"code": "content_policy_violation"})
    other = openai.APIError("server error", request, body={"code": "server_error"})

    assert provider.is_content_policy_error(rejected)
    assert not provider.is_content_policy_error(other)
    assert not provider.is_content_policy_error(RuntimeError("content_policy_violation"))
    assert not provider.is_available()
