"""Shared pytest fixtures for the kbchat test suite."""
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from kbchat.config import ProviderSettings
from kbchat.errors import EmbeddingProviderError
from kbchat.memory import ConversationManager
from kbchat.rag.blobs import LocalBlobStorage
from kbchat.rag.embeddings import EmbeddingClient
from kbchat.rag.generator import AnswerGenerator
from kbchat.rag.ingest import IngestionPipeline
from kbchat.rag.knowledge_store import KnowledgeStore
from kbchat.services import build_services

# Each keyword is one vector dimension; the last dimension marks "no keyword"
VOCABULARY = (
    "fuel",
    "gasoline",
    "oil",
    "engine",
    "chain",
    "blade",
    "battery",
    "warranty",
    "brush cutter",
    "mower",
)


def keyword_vector(text: str) -> List[float]:
    """Deterministic bag-of-keywords embedding."""
    lowered = text.lower()
    vector = [float(lowered.count(word)) for word in VOCABULARY]
    vector.append(0.0 if any(vector) else 1.0)
    return vector


class FakeProviderClient:
    """Stands in for ProviderClient: keyword embeddings and a scripted answer."""

    def __init__(self, answer: str = "Use unleaded gasoline mixed with two-stroke oil."):
        self.answer = answer
        self.fail_embed_on: Optional[str] = None
        self.embed_calls: List[str] = []
        self.chat_calls: List[List[Dict[str, str]]] = []

    async def embed(self, text: str, model: str = None) -> List[float]:
        self.embed_calls.append(text)
        if self.fail_embed_on and self.fail_embed_on in text:
            raise EmbeddingProviderError("quota exceeded", provider_name="fake", retryable=True)
        return keyword_vector(text)

    async def chat(self, messages, model: str = None, temperature: float = None) -> str:
        self.chat_calls.append(list(messages))
        return self.answer


MANUAL_TEXT = """# Brush Cutter BC-450 Manual

## Fuel
The brush cutter engine runs on fuel made of unleaded gasoline mixed with two-stroke oil at a 50:1 ratio. Never use pure gasoline.

## Cutting head
Replace the nylon line when it is shorter than 10 cm. Keep the blade guard installed at all times."""

WARRANTY_TEXT = (
    "The lithium battery pack is covered by a two year warranty. Keep the battery "
    "charged between uses and store it indoors during winter."
)


@pytest.fixture
def manual_text() -> str:
    return MANUAL_TEXT


@pytest.fixture
def warranty_text() -> str:
    return WARRANTY_TEXT


@pytest.fixture
def settings() -> ProviderSettings:
    """Provider settings that need no API key."""
    return ProviderSettings(
        provider="ollama",
        base_url="http://ollama.test",
        embedding_model="keyword-embedder",
        chat_model="scripted-chat",
    )


@pytest.fixture
def provider_client() -> FakeProviderClient:
    return FakeProviderClient()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "kbchat.sqlite"


@pytest.fixture
def blob_root(tmp_path: Path) -> Path:
    return tmp_path / "blobs"


@pytest.fixture
def store(db_path: Path) -> KnowledgeStore:
    return KnowledgeStore(db_path)


@pytest.fixture
def blob_storage(blob_root: Path) -> LocalBlobStorage:
    return LocalBlobStorage(root=blob_root, public_base_url="http://kb.test")


@pytest.fixture
def conversations(db_path: Path) -> ConversationManager:
    return ConversationManager(db_path)


@pytest.fixture
def embedding_client(settings, provider_client) -> EmbeddingClient:
    return EmbeddingClient(settings, client=provider_client)


@pytest.fixture
def generator(settings, provider_client) -> AnswerGenerator:
    return AnswerGenerator(settings, client=provider_client)


@pytest.fixture
def pipeline(embedding_client, store, blob_storage) -> IngestionPipeline:
    return IngestionPipeline(embedding_client, store, blob_storage=blob_storage, concurrency=1)


@pytest.fixture
def services(settings, db_path, blob_root, provider_client):
    """Fully wired services over temporary storage and the fake provider."""
    return build_services(
        settings=settings,
        db_path=db_path,
        blob_root=blob_root,
        provider_client=provider_client,
    )


@pytest.fixture
def reject_ai_messages(db_path: Path, conversations: ConversationManager) -> None:
    """Make the database refuse ai_agent messages, as a failing disk would."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("""
            CREATE TRIGGER reject_ai_messages BEFORE INSERT ON messages
            WHEN NEW.sender_type = 'ai_agent'
            BEGIN
                SELECT RAISE(ABORT, 'disk I/O error');
            END
        """)
        conn.commit()
    finally:
        conn.close()
