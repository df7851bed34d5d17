"""Tests for provider settings and the error hierarchy."""
import pytest

from kbchat import config
from kbchat.config import ProviderSettings
from kbchat.errors import (
    ConfigurationError,
    EmbeddingProviderError,
    ExtractionError,
    KBChatError,
    StorageError,
)


def test_from_env_reads_api_key(monkeypatch):
    """The OpenAI key is read from the environment."""
    monkeypatch.setattr(config, "PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.delenv("PROVIDER_BASE_URL", raising=False)

    settings = ProviderSettings.from_env()

    assert settings.provider == "openai"
    assert settings.api_key == "sk-env"
    assert settings.base_url == config.OPENAI_BASE_URL
    assert settings.validate() is settings


def test_from_env_ollama_uses_ollama_url(monkeypatch):
    """Ollama settings point at the Ollama base URL."""
    monkeypatch.setattr(config, "PROVIDER", "Ollama")
    monkeypatch.delenv("PROVIDER_BASE_URL", raising=False)

    settings = ProviderSettings.from_env()

    assert settings.provider == "ollama"
    assert settings.base_url == config.OLLAMA_BASE_URL


def test_api_key_is_hidden_from_repr():
    """The API key never shows up in the settings repr."""
    assert "sk-secret" not in repr(ProviderSettings(api_key="sk-secret"))


@pytest.mark.parametrize(
    "settings",
    [
        ProviderSettings(provider="openai", api_key=None),
        ProviderSettings(provider="cohere", api_key="key"),
        ProviderSettings(provider="ollama", embedding_model=""),
    ],
)
def test_validate_rejects_unusable_settings(settings):
    """Missing keys, unknown providers and empty models fail validation."""
    with pytest.raises(ConfigurationError):
        settings.validate()


def test_error_message_includes_provider():
    """Provider errors are prefixed with the provider name."""
    error = EmbeddingProviderError("quota exceeded", provider_name="openai")

    assert str(error) == "[openai] quota exceeded"
    assert isinstance(error, KBChatError)


def test_error_defaults_and_body():
    """Errors have default messages and carry chunk_index in their body."""
    assert str(ExtractionError()) == "No extractable text in source"
    assert StorageError("disk full", chunk_index=4).to_dict() == {
        "error": "disk full",
        "chunk_index": 4,
    }
    assert StorageError("disk full").to_dict() == {"error": "disk full"}
