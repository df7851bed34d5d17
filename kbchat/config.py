"""Application configuration with sensible defaults."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from kbchat.errors import ConfigurationError

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("KBCHAT_DATA_DIR", str(BASE_DIR / "data")))

# Ensure data directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Provider configuration (read once by ProviderSettings.from_env)
PROVIDER = os.getenv("AI_PROVIDER", "openai")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4o-mini")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.2"))
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
MIN_CHUNK_LENGTH = int(os.getenv("MIN_CHUNK_LENGTH", "50"))
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.4"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
HISTORY_WINDOW = int(os.getenv("HISTORY_WINDOW", "6"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "8000"))
INGEST_CONCURRENCY = int(os.getenv("INGEST_CONCURRENCY", "1"))
ASSISTANT_NAME = os.getenv("ASSISTANT_NAME", "the store")

# Blob storage
BLOB_DIR = DATA_DIR / "blobs"
BLOB_BUCKET = os.getenv("BLOB_BUCKET", "knowledge-base")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "20"))

# Chat input limits
MAX_QUESTION_LENGTH = 2000

# Database
DB_PATH = DATA_DIR / "kbchat.sqlite"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SUPPORTED_PROVIDERS = ("openai", "ollama")


@dataclass(frozen=True)
class ProviderSettings:
    """Credentials and model names for the embedding and completion providers.

    Built once at startup and handed to the clients that need it, so pipeline
    code never reads provider configuration from the environment.
    """

    provider: str = "openai"
    api_key: Optional[str] = field(default=None, repr=False)
    base_url: str = OPENAI_BASE_URL
    embedding_model: str = EMBEDDING_MODEL
    chat_model: str = CHAT_MODEL
    temperature: float = CHAT_TEMPERATURE
    timeout: float = PROVIDER_TIMEOUT

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        """Build settings from environment variables.

        Returns:
            ProviderSettings for the configured provider
        """
        provider = PROVIDER.lower()
        default_url = OLLAMA_BASE_URL if provider == "ollama" else OPENAI_BASE_URL
        return cls(
            provider=provider,
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("PROVIDER_BASE_URL", default_url),
            embedding_model=EMBEDDING_MODEL,
            chat_model=CHAT_MODEL,
            temperature=CHAT_TEMPERATURE,
            timeout=PROVIDER_TIMEOUT,
        )

    def validate(self) -> "ProviderSettings":
        """Check that the settings are usable.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: If the provider is unknown, a key or model is missing
        """
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported AI provider: {self.provider}",
                provider_name=self.provider,
            )
        if self.provider == "openai" and not self.api_key:
            raise ConfigurationError(
                "API key is not configured", provider_name=self.provider
            )
        if not self.embedding_model or not self.chat_model:
            raise ConfigurationError(
                "Embedding and chat models must be configured",
                provider_name=self.provider,
            )
        return self
