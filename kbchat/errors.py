"""Exception hierarchy for the knowledge-base chat service.

All errors derive from :class:`KBChatError`, which carries the provider that
failed (if any), the chunk index an ingestion failed on (if any) and whether
retrying the same call could succeed.
"""
from typing import Optional


class KBChatError(Exception):
    """Base exception for all service errors."""

    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        provider_name: Optional[str] = None,
        chunk_index: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        self.message = message or self.default_message
        self.provider_name = provider_name
        self.chunk_index = chunk_index
        self.retryable = retryable
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.provider_name:
            return f"[{self.provider_name}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Error body for API responses."""
        body = {"error": str(self)}
        if self.chunk_index is not None:
            body["chunk_index"] = self.chunk_index
        return body


class ExtractionError(KBChatError):
    """No usable text could be extracted from a source."""

    default_message = "No extractable text in source"


class EmbeddingProviderError(KBChatError):
    """The embedding call failed, timed out or hit a quota."""

    default_message = "Embedding provider call failed"


class CompletionProviderError(KBChatError):
    """The answer-generation call failed."""

    default_message = "Completion provider call failed"


class StorageError(KBChatError):
    """A persistence or blob operation failed."""

    default_message = "Storage operation failed"


class ConfigurationError(KBChatError):
    """Provider credentials or models are missing or inconsistent."""

    default_message = "Invalid or missing configuration"
