"""Ingest pipeline for turning documents into knowledge chunks.

Orchestrates:
- Source resolution and text extraction (binary documents)
- Markup normalization
- Text chunking and short-fragment filtering
- Embedding generation
- Chunk storage

Chunks are embedded and stored in order. The first failure aborts the
document; chunks already stored stay stored (there is no rollback), and the
raised error carries the index of the chunk that failed.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
import structlog

from kbchat import config
from kbchat.db import utcnow
from kbchat.errors import EmbeddingProviderError, ExtractionError, KBChatError, StorageError
from kbchat.rag.blobs import DocumentSource, LocalBlobStorage, ResolvedSource, resolve_source
from kbchat.rag.chunker import TextChunker
from kbchat.rag.embeddings import EmbeddingClient
from kbchat.rag.extract import extract_text
from kbchat.rag.knowledge_store import ChunkMetadata, KnowledgeStore
from kbchat.rag.normalizer import normalize_text

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], None]


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    title: str
    source_type: str
    chunks_stored: int
    chunks_skipped: int = 0
    file_url: Optional[str] = None
    storage_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "chunks": self.chunks_stored,
            "message": f"{self.chunks_stored} chunks processed successfully.",
        }


class IngestionPipeline:
    """Pipeline for ingesting documents into the knowledge store."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        store: KnowledgeStore,
        blob_storage: Optional[LocalBlobStorage] = None,
        chunk_size: int = None,
        chunk_overlap: int = None,
        min_chunk_length: int = None,
        concurrency: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedding_client: Client used for every chunk embedding
            store: Knowledge store receiving the chunks
            blob_storage: Storage for BlobReference sources
            chunk_size: Chunk size in characters (default from config)
            chunk_overlap: Chunk overlap in characters (default from config)
            min_chunk_length: Chunks shorter than this after trimming are skipped
            concurrency: Number of embeddings requested at once (1 = sequential)
        """
        self.embedding_client = embedding_client
        self.store = store
        self.blob_storage = blob_storage
        self.chunker = TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.min_chunk_length = (
            config.MIN_CHUNK_LENGTH if min_chunk_length is None else min_chunk_length
        )
        self.concurrency = max(1, concurrency or config.INGEST_CONCURRENCY)

        logger.info(
            "ingest_pipeline_initialized",
            embedding_model=self.embedding_client.model,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            concurrency=self.concurrency,
        )

    def prepare_chunks(self, raw_text: str) -> Tuple[List[str], int]:
        """Normalize, chunk and filter a document's text.

        Returns:
            Tuple of (chunk contents long enough to embed in document order,
            number of chunks skipped as too short)
        """
        chunks = self.chunker.split(normalize_text(raw_text))
        kept = [c for c in chunks if len(c.strip()) >= self.min_chunk_length]
        return kept, len(chunks) - len(kept)

    async def ingest_text(
        self,
        title: str,
        source_type: str,
        raw_text: str,
        resolved: Optional[ResolvedSource] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
        replace: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Ingest a document given as text.

        Args:
            title: Logical document name
            source_type: Category tag (e.g. "document", "pdf", "faq")
            raw_text: Document text, possibly containing markup
            resolved: Source blob the text came from, if any
            extra_metadata: Additional metadata stored with every chunk
            replace: Delete existing chunks of (title, source_type) first
            progress_callback: Optional callback(current, total)

        Returns:
            IngestResult with the number of chunks stored

        Raises:
            ExtractionError: If the text is empty after normalization
            EmbeddingProviderError: If an embedding call fails (chunk_index set)
            StorageError: If a chunk cannot be stored (chunk_index set)
        """
        title = (title or "").strip()
        source_type = (source_type or "").strip()
        if not title or not source_type:
            raise ValueError("Document title and source type are required")

        if not raw_text or not raw_text.strip():
            raise ExtractionError(f"No text to ingest for '{title}'")

        chunks, skipped = self.prepare_chunks(raw_text)
        if not chunks and not skipped:
            raise ExtractionError(f"No text left in '{title}' after removing markup")

        # Fixed before the loop so every row of the document agrees on it
        total = len(chunks)

        logger.info(
            "ingesting_document",
            title=title,
            source_type=source_type,
            chunks=total,
            skipped=skipped,
        )

        if replace:
            removed = self.store.delete_document_rows(title, source_type)
            logger.info("document_replaced", title=title, source_type=source_type, removed=removed)

        ingested_at = utcnow()

        def metadata_for(index: int) -> ChunkMetadata:
            return ChunkMetadata(
                chunk_index=index,
                total_chunks=total,
                ingested_at=ingested_at,
                file_url=resolved.url if resolved else None,
                storage_path=resolved.storage_path if resolved else None,
                extra=dict(extra_metadata or {}),
            )

        stored = 0
        for window_start in range(0, total, self.concurrency):
            window = chunks[window_start : window_start + self.concurrency]
            embeddings = await asyncio.gather(
                *(self.embedding_client.embed(content) for content in window),
                return_exceptions=True,
            )

            for offset, (content, embedding) in enumerate(zip(window, embeddings)):
                index = window_start + offset

                if isinstance(embedding, BaseException):
                    self._raise_chunk_failure(embedding, index, title, stored)

                try:
                    self.store.insert_chunk(
                        title=title,
                        source_type=source_type,
                        content=content,
                        embedding=embedding,
                        metadata=metadata_for(index),
                        model=self.embedding_client.model,
                    )
                except KBChatError as e:
                    self._raise_chunk_failure(e, index, title, stored)

                stored += 1
                if progress_callback:
                    progress_callback(stored, total)

        logger.info(
            "document_ingested",
            title=title,
            source_type=source_type,
            chunks_stored=stored,
            chunks_skipped=skipped,
        )

        return IngestResult(
            title=title,
            source_type=source_type,
            chunks_stored=stored,
            chunks_skipped=skipped,
            file_url=resolved.url if resolved else None,
            storage_path=resolved.storage_path if resolved else None,
        )

    async def ingest_source(
        self,
        title: str,
        source_type: str,
        source: DocumentSource,
        extra_metadata: Optional[Dict[str, Any]] = None,
        replace: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Ingest a binary document from blob storage or a URL.

        Raises:
            StorageError: If the source cannot be fetched
            ExtractionError: If the source has no extractable text
        """
        if self.blob_storage is None:
            raise StorageError("No blob storage configured for source ingestion")

        resolved = await resolve_source(
            source, self.blob_storage, timeout=self.embedding_client.settings.timeout
        )
        text = extract_text(resolved.data, resolved.content_type, resolved.filename)

        return await self.ingest_text(
            title,
            source_type,
            text,
            resolved=resolved,
            extra_metadata=extra_metadata,
            replace=replace,
            progress_callback=progress_callback,
        )

    def _raise_chunk_failure(
        self, error: BaseException, index: int, title: str, stored: int
    ) -> None:
        """Log a per-chunk failure and re-raise it tagged with the chunk index."""
        logger.error(
            "chunk_ingestion_failed",
            title=title,
            chunk_index=index,
            chunks_stored=stored,
            error=str(error),
            error_type=type(error).__name__,
        )

        if isinstance(error, KBChatError):
            raise type(error)(
                f"Chunk {index} failed: {error.message}",
                provider_name=error.provider_name,
                chunk_index=index,
                retryable=error.retryable,
            ) from error

        if isinstance(error, Exception):
            raise EmbeddingProviderError(
                f"Chunk {index} failed: {error}", chunk_index=index
            ) from error

        raise error
