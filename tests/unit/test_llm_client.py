"""Tests for the provider wire client, EmbeddingClient and AnswerGenerator."""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from kbchat.config import ProviderSettings
from kbchat.errors import CompletionProviderError, ConfigurationError, EmbeddingProviderError
from kbchat.llm_client import ProviderClient
from kbchat.rag.embeddings import EmbeddingClient
from kbchat.rag.generator import AnswerGenerator

OPENAI = ProviderSettings(
    provider="openai",
    api_key="sk-test",
    base_url="https://api.test/v1",
    embedding_model="text-embedding-3-small",
    chat_model="gpt-4o-mini",
    temperature=0.2,
)
OLLAMA = ProviderSettings(
    provider="ollama",
    base_url="http://ollama.test",
    embedding_model="nomic-embed-text",
    chat_model="llama3",
)


def _client(settings, handler, seen=None):
    def record(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return handler(request)

    return ProviderClient(settings, transport=httpx.MockTransport(record))


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_embed_request_and_response():
    """OpenAI embeddings use the embeddings endpoint and data field."""
    seen = []
    client = _client(
        OPENAI,
        lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]}),
        seen,
    )

    vector = await client.embed("two-stroke oil")

    assert vector == [0.1, 0.2, 0.3]
    request = seen[0]
    assert request.url == "https://api.test/v1/embeddings"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {
        "model": "text-embedding-3-small",
        "input": "two-stroke oil",
    }


@pytest.mark.asyncio
async def test_ollama_embed_request_and_response():
    """Ollama embeddings use /api/embeddings."""
    seen = []
    client = _client(
        OLLAMA, lambda request: httpx.Response(200, json={"embedding": [1.0, 0.0]}), seen
    )

    assert await client.embed("chain oil") == [1.0, 0.0]
    assert seen[0].url == "http://ollama.test/api/embeddings"
    assert "Authorization" not in seen[0].headers
    assert json.loads(seen[0].content) == {"model": "nomic-embed-text", "prompt": "chain oil"}


@pytest.mark.asyncio
async def test_openai_chat_request_and_response():
    """OpenAI chat uses chat/completions and returns the message content."""
    seen = []
    client = _client(
        OPENAI,
        lambda request: httpx.Response(
            200, json={"choices": [{"message": {"role": "assistant", "content": "Use 50:1."}}]}
        ),
        seen,
    )
    messages = [{"role": "user", "content": "Fuel ratio?"}]

    assert await client.chat(messages) == "Use 50:1."
    payload = json.loads(seen[0].content)
    assert seen[0].url == "https://api.test/v1/chat/completions"
    assert payload == {"model": "gpt-4o-mini", "messages": messages, "temperature": 0.2}


@pytest.mark.asyncio
async def test_ollama_chat_disables_streaming():
    """Ollama chat requests are sent with stream disabled."""
    seen = []
    client = _client(
        OLLAMA,
        lambda request: httpx.Response(200, json={"message": {"content": "Hello"}}),
        seen,
    )

    assert await client.chat([{"role": "user", "content": "Hi"}], temperature=0.5) == "Hello"
    payload = json.loads(seen[0].content)
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.5}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limit_is_retryable_and_carries_detail():
    """A 429 is retryable and keeps the provider's message."""
    client = _client(
        OPENAI,
        lambda request: httpx.Response(429, json={"error": {"message": "Rate limit reached"}}),
    )

    with pytest.raises(EmbeddingProviderError) as exc_info:
        await client.embed("text")

    assert exc_info.value.retryable is True
    assert exc_info.value.provider_name == "openai"
    assert "Rate limit reached" in str(exc_info.value)


@pytest.mark.asyncio
async def test_auth_error_is_not_retryable():
    """A 401 is not retryable."""
    client = _client(OPENAI, lambda request: httpx.Response(401, text="bad key"))

    with pytest.raises(CompletionProviderError) as exc_info:
        await client.chat([{"role": "user", "content": "Hi"}])

    assert exc_info.value.retryable is False
    assert "HTTP 401" in str(exc_info.value)


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    """Timeouts are reported as retryable."""
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(OPENAI, handler)

    with pytest.raises(EmbeddingProviderError) as exc_info:
        await client.embed("text")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_invalid_json_raises_provider_error():
    """A response that is not JSON fails with a provider error."""
    client = _client(OPENAI, lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(EmbeddingProviderError):
        await client.embed("text")


@pytest.mark.asyncio
async def test_missing_embedding_raises():
    """A response without an embedding fails."""
    client = _client(OPENAI, lambda request: httpx.Response(200, json={"data": []}))

    with pytest.raises(EmbeddingProviderError):
        await client.embed("text")


@pytest.mark.asyncio
async def test_empty_completion_raises():
    """A response without a completion fails."""
    client = _client(
        OPENAI,
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": ""}}]}),
    )

    with pytest.raises(CompletionProviderError):
        await client.chat([{"role": "user", "content": "Hi"}])


# ---------------------------------------------------------------------------
# EmbeddingClient / AnswerGenerator
# ---------------------------------------------------------------------------


def test_clients_require_api_key_for_openai():
    """OpenAI clients cannot be built without an API key."""
    settings = ProviderSettings(provider="openai", api_key=None)

    with pytest.raises(ConfigurationError):
        EmbeddingClient(settings)
    with pytest.raises(ConfigurationError):
        AnswerGenerator(settings)


@pytest.mark.asyncio
async def test_embedding_client_uses_configured_model():
    """The embedding client sends the configured model."""
    provider = AsyncMock()
    provider.embed.return_value = [1, 2, 3]
    client = EmbeddingClient(OLLAMA, client=provider)

    vector = await client.embed("gasoline")

    assert vector == [1.0, 2.0, 3.0]
    provider.embed.assert_awaited_once_with("gasoline", model="nomic-embed-text")


@pytest.mark.asyncio
async def test_embedding_client_rejects_empty_text():
    """Blank text is not sent for embedding."""
    provider = AsyncMock()
    client = EmbeddingClient(OLLAMA, client=provider)

    with pytest.raises(EmbeddingProviderError):
        await client.embed("   ")
    provider.embed.assert_not_awaited()


@pytest.mark.asyncio
async def test_embedding_client_rejects_empty_vector():
    """An empty vector from the provider is an error."""
    provider = AsyncMock()
    provider.embed.return_value = []
    client = EmbeddingClient(OLLAMA, client=provider)

    with pytest.raises(EmbeddingProviderError):
        await client.embed("gasoline")


@pytest.mark.asyncio
async def test_generator_strips_answer_and_passes_temperature():
    """The generator strips the answer and sends the temperature."""
    provider = AsyncMock()
    provider.chat.return_value = "  Use fresh fuel.\n"
    generator = AnswerGenerator(OPENAI, client=provider)
    prompt = [{"role": "user", "content": "Fuel?"}]

    assert await generator.generate(prompt) == "Use fresh fuel."
    provider.chat.assert_awaited_once_with(prompt, model="gpt-4o-mini", temperature=0.2)


@pytest.mark.asyncio
async def test_generator_rejects_blank_answer():
    """A blank answer is an error, not a fallback."""
    provider = AsyncMock()
    provider.chat.return_value = "   "
    generator = AnswerGenerator(OPENAI, client=provider)

    with pytest.raises(CompletionProviderError):
        await generator.generate([{"role": "user", "content": "Fuel?"}])


@pytest.mark.asyncio
async def test_generator_propagates_provider_failure():
    """Provider failures reach the caller unchanged."""
    provider = AsyncMock()
    provider.chat.side_effect = CompletionProviderError("down", provider_name="openai")
    generator = AnswerGenerator(OPENAI, client=provider)

    with pytest.raises(CompletionProviderError):
        await generator.generate([{"role": "user", "content": "Fuel?"}])
