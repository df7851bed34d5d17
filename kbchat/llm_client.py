"""Embedding and chat-completion provider client with error handling.

Speaks either the OpenAI REST API (or any compatible server) or the Ollama
API, depending on ProviderSettings.provider.
"""
import httpx
from typing import List, Dict, Optional, Type
import structlog

from kbchat.config import ProviderSettings
from kbchat.errors import KBChatError, EmbeddingProviderError, CompletionProviderError

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = {408, 409, 429}


def _is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


class ProviderClient:
    """Async client for the configured embedding/completion provider."""

    def __init__(
        self,
        settings: ProviderSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider client.

        Args:
            settings: Provider credentials, models and timeout
            transport: Optional httpx transport (used by tests)
        """
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self.timeout = settings.timeout
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return self.settings.provider

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    async def _post(
        self, path: str, payload: Dict, error_cls: Type[KBChatError]
    ) -> Dict:
        """POST a JSON payload and return the decoded response.

        Raises:
            error_cls: On timeouts, connection failures, HTTP errors or bad JSON
        """
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            logger.error("provider_timeout", provider=self.provider_name, path=path)
            raise error_cls(
                f"Request to {path} timed out after {self.timeout}s",
                provider_name=self.provider_name,
                retryable=True,
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                "provider_http_error",
                provider=self.provider_name,
                path=path,
                status_code=status_code,
                body=e.response.text[:300],
            )
            raise error_cls(
                f"{path} returned HTTP {status_code}: {_error_detail(e.response)}",
                provider_name=self.provider_name,
                retryable=_is_retryable_status(status_code),
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "provider_connection_error",
                provider=self.provider_name,
                path=path,
                error=str(e),
            )
            raise error_cls(
                f"Could not reach provider: {e}",
                provider_name=self.provider_name,
                retryable=True,
            ) from e
        except ValueError as e:
            raise error_cls(
                f"Invalid JSON from {path}", provider_name=self.provider_name
            ) from e

        if not isinstance(data, dict):
            raise error_cls(
                f"Unexpected response shape from {path}",
                provider_name=self.provider_name,
            )
        return data

    async def embed(self, text: str, model: str = None) -> List[float]:
        """Generate an embedding vector for a text.

        Args:
            text: Text to embed
            model: Model to use (defaults to settings.embedding_model)

        Returns:
            Embedding vector

        Raises:
            EmbeddingProviderError: On API errors or malformed responses
        """
        model = model or self.settings.embedding_model

        logger.debug(
            "provider_embedding_request",
            provider=self.provider_name,
            model=model,
            text_length=len(text),
        )

        if self.provider_name == "ollama":
            data = await self._post(
                "/api/embeddings",
                {"model": model, "prompt": text},
                EmbeddingProviderError,
            )
            embedding = data.get("embedding")
        else:
            data = await self._post(
                "/embeddings",
                {"model": model, "input": text},
                EmbeddingProviderError,
            )
            try:
                embedding = data["data"][0]["embedding"]
            except (KeyError, IndexError, TypeError):
                embedding = None

        if not embedding:
            raise EmbeddingProviderError(
                "Provider returned no embedding", provider_name=self.provider_name
            )

        return embedding

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to settings.chat_model)
            temperature: Sampling temperature (defaults to settings.temperature)

        Returns:
            Generated message content

        Raises:
            CompletionProviderError: On API errors or malformed responses
        """
        model = model or self.settings.chat_model
        if temperature is None:
            temperature = self.settings.temperature

        logger.info(
            "provider_chat_request",
            provider=self.provider_name,
            model=model,
            message_count=len(messages),
        )

        if self.provider_name == "ollama":
            data = await self._post(
                "/api/chat",
                {
                    "model": model,
                    "messages": messages,
                    "stream": False,
                    "options": {"temperature": temperature},
                },
                CompletionProviderError,
            )
            content = (data.get("message") or {}).get("content")
        else:
            data = await self._post(
                "/chat/completions",
                {"model": model, "messages": messages, "temperature": temperature},
                CompletionProviderError,
            )
            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError):
                content = None

        if not content:
            raise CompletionProviderError(
                "Provider returned an empty completion",
                provider_name=self.provider_name,
            )

        logger.info(
            "provider_chat_response",
            provider=self.provider_name,
            model=model,
            response_length=len(content),
        )

        return content


def _error_detail(response: httpx.Response) -> str:
    """Pull the provider's error message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    if error:
        return str(error)
    return response.text[:200]
