"""Embedding generation for chunks and queries.

Ingestion and retrieval must use the same EmbeddingClient settings: vectors
from different models live in different spaces and cannot be compared.
"""
from typing import List, Optional
import structlog

from kbchat.config import ProviderSettings
from kbchat.errors import EmbeddingProviderError
from kbchat.llm_client import ProviderClient

logger = structlog.get_logger()


class EmbeddingClient:
    """Converts a text segment into a fixed-length vector."""

    def __init__(
        self,
        settings: ProviderSettings,
        client: Optional[ProviderClient] = None,
    ):
        """Initialize the embedding client.

        Args:
            settings: Validated provider settings
            client: Provider client (built from settings if not provided)
        """
        self.settings = settings.validate()
        self.client = client or ProviderClient(settings)

    @property
    def model(self) -> str:
        """Embedding model identifier."""
        return self.settings.embedding_model

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingProviderError: If the provider fails or returns nothing
        """
        if not text or not text.strip():
            raise EmbeddingProviderError(
                "Cannot embed empty text", provider_name=self.settings.provider
            )

        embedding = await self.client.embed(text, model=self.model)

        if not embedding:
            raise EmbeddingProviderError(
                "Empty embedding returned", provider_name=self.settings.provider
            )

        return [float(value) for value in embedding]
