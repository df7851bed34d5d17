"""Retriever for semantic search over the knowledge base.

Handles:
- Query embedding generation (same model as ingestion)
- Similarity search with a score threshold
- Result ranking
"""
from typing import List, Optional
import structlog

from kbchat import config
from kbchat.rag.embeddings import EmbeddingClient
from kbchat.rag.knowledge_store import KnowledgeStore, SearchHit

logger = structlog.get_logger()


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        store: KnowledgeStore,
        similarity_threshold: float = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            embedding_client: Client used to embed questions
            store: Knowledge store providing similarity search
            similarity_threshold: Minimum cosine similarity (default from config)
            top_k: Number of results to retrieve (default from config)
        """
        self.embedding_client = embedding_client
        self.store = store
        self.similarity_threshold = (
            config.SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.top_k = top_k or config.RETRIEVAL_TOP_K

    async def embed_query(self, question: str) -> List[float]:
        """Embed a question with the ingestion model.

        Raises:
            EmbeddingProviderError: If the embedding call fails
        """
        return await self.embedding_client.embed(question)

    def search(
        self,
        query_vector: List[float],
        similarity_threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[SearchHit]:
        """Search the knowledge base with an already embedded question.

        Returns:
            Hits scoring at or above the threshold, best first
        """
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold
        top_k = top_k or self.top_k

        hits = self.store.search(
            query_vector,
            threshold=threshold,
            limit=top_k,
            model=self.embedding_client.model,
        )

        logger.info(
            "retrieval_completed",
            threshold=threshold,
            top_k=top_k,
            results_returned=len(hits),
            top_score=hits[0].score if hits else None,
        )
        return hits

    async def retrieve(
        self,
        question: str,
        similarity_threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[SearchHit]:
        """Retrieve the chunks most relevant to a question.

        An empty list means no relevant context was found.

        Args:
            question: User question text
            similarity_threshold: Minimum score (overrides default)
            top_k: Number of results to return (overrides default)

        Returns:
            List of SearchHit objects, sorted by score (best first)
        """
        if not question or not question.strip():
            logger.warning("empty_query_provided")
            return []

        query_vector = await self.embed_query(question)
        return self.search(query_vector, similarity_threshold, top_k)
