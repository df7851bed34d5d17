"""Construction of the long-lived service objects.

The web app and the command-line scripts share one wiring: a single
embedding client feeds both ingestion and retrieval, so query vectors always
come from the model the knowledge base was built with.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import structlog

from kbchat.config import ProviderSettings
from kbchat.llm_client import ProviderClient
from kbchat.memory import ConversationManager
from kbchat.rag.blobs import LocalBlobStorage
from kbchat.rag.context import ContextAssembler
from kbchat.rag.documents import DocumentManager
from kbchat.rag.embeddings import EmbeddingClient
from kbchat.rag.generator import AnswerGenerator
from kbchat.rag.ingest import IngestionPipeline
from kbchat.rag.knowledge_store import KnowledgeStore
from kbchat.rag.orchestrator import ChatOrchestrator
from kbchat.rag.retriever import Retriever

logger = structlog.get_logger()


@dataclass
class Services:
    settings: ProviderSettings
    store: KnowledgeStore
    blob_storage: LocalBlobStorage
    conversations: ConversationManager
    embedding_client: EmbeddingClient
    generator: AnswerGenerator
    pipeline: IngestionPipeline
    retriever: Retriever
    assembler: ContextAssembler
    orchestrator: ChatOrchestrator
    documents: DocumentManager


def build_services(
    settings: Optional[ProviderSettings] = None,
    db_path: Optional[Path] = None,
    blob_root: Optional[Path] = None,
    provider_client: Optional[ProviderClient] = None,
) -> Services:
    """Build every service from provider settings.

    Args:
        settings: Provider settings (read from the environment if not provided)
        db_path: SQLite database file (default from config)
        blob_root: Directory holding blob buckets (default from config)
        provider_client: Provider client shared by embedding and generation

    Returns:
        Fully wired Services

    Raises:
        ConfigurationError: If the provider settings are unusable
    """
    settings = (settings or ProviderSettings.from_env()).validate()
    client = provider_client or ProviderClient(settings)

    store = KnowledgeStore(db_path)
    blob_storage = LocalBlobStorage(root=blob_root)
    conversations = ConversationManager(db_path)

    embedding_client = EmbeddingClient(settings, client=client)
    generator = AnswerGenerator(settings, client=client)

    retriever = Retriever(embedding_client, store)
    assembler = ContextAssembler()

    services = Services(
        settings=settings,
        store=store,
        blob_storage=blob_storage,
        conversations=conversations,
        embedding_client=embedding_client,
        generator=generator,
        pipeline=IngestionPipeline(embedding_client, store, blob_storage=blob_storage),
        retriever=retriever,
        assembler=assembler,
        orchestrator=ChatOrchestrator(retriever, assembler, generator, conversations),
        documents=DocumentManager(store, blob_storage),
    )

    logger.info(
        "services_initialized",
        provider=settings.provider,
        embedding_model=settings.embedding_model,
        chat_model=settings.chat_model,
        chunks=store.count_chunks(),
    )
    return services
