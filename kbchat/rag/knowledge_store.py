"""Knowledge chunk persistence and similarity search.

Chunk rows live in SQLite and are never updated in place; a FAISS index
rebuilt from those rows on open, and again whenever another writer changed
them, serves similarity queries. A logical document is the set of chunks
sharing (title, source_type).
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import numpy as np
import structlog

from kbchat import config, db
from kbchat.errors import ConfigurationError, StorageError
from kbchat.rag.store_faiss import VectorIndex, to_float32

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChunkMetadata:
    """Position and provenance of a chunk within its document.

    At most one blob pointer is needed to find the source again; both may be
    present when the source came from blob storage.
    """

    chunk_index: int
    total_chunks: int
    ingested_at: str
    file_url: Optional[str] = None
    storage_path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class KnowledgeChunk:
    """The atomic retrievable unit."""

    id: int
    title: str
    content: str
    source_type: str
    metadata: ChunkMetadata
    embedding: Optional[List[float]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KnowledgeChunk":
        return cls(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            source_type=row["source_type"],
            metadata=ChunkMetadata(
                chunk_index=row["chunk_index"],
                total_chunks=row["total_chunks"],
                ingested_at=row["ingested_at"],
                file_url=row.get("file_url"),
                storage_path=row.get("storage_path"),
                extra=row.get("extra") or {},
            ),
        )


@dataclass(frozen=True)
class SearchHit:
    """A chunk returned by similarity search with its cosine score."""

    chunk: KnowledgeChunk
    score: float

    @property
    def title(self) -> str:
        return self.chunk.title

    @property
    def content(self) -> str:
        return self.chunk.content


@dataclass(frozen=True)
class DocumentSummary:
    """One logical document of the knowledge base."""

    title: str
    source_type: str
    chunk_count: int
    created_at: str
    file_url: Optional[str] = None
    storage_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "sourceType": self.source_type,
            "chunkCount": self.chunk_count,
            "createdAt": self.created_at,
            "fileUrl": self.file_url,
            "storagePath": self.storage_path,
        }


class KnowledgeStore:
    """Owns every KnowledgeChunk row and the vector index built over them."""

    def __init__(self, db_path: Optional[Path] = None):
        """Open (and create if needed) the knowledge store.

        Args:
            db_path: SQLite database file (defaults to config.DB_PATH)
        """
        self.db_path = db_path or config.DB_PATH
        db.init_database(self.db_path)
        self.vector_index = VectorIndex()
        # (row count, highest chunk id) the index was last built from
        self._synced_state = (0, 0)
        self._load_index()

    def _load_index(self) -> None:
        """Rebuild the FAISS index from stored embeddings."""
        self.vector_index.reset()
        rows = db.iter_embeddings(self.db_path)
        self._synced_state = (len(rows), rows[-1][0] if rows else 0)
        if not rows:
            logger.info("knowledge_store_opened", db_path=str(self.db_path), chunks=0)
            return

        ids = [chunk_id for chunk_id, _ in rows]
        vectors = np.vstack([np.frombuffer(blob, dtype=np.float32) for _, blob in rows])
        self.vector_index.add(ids, vectors)

        logger.info(
            "knowledge_store_opened",
            db_path=str(self.db_path),
            chunks=len(ids),
            dimension=self.vector_index.dimension,
        )

    def refresh(self) -> bool:
        """Reload the index if another process changed the chunk table.

        The ingest script and other server workers may write to the same
        database; the index is checked against it before every read or write.

        Returns:
            True if the index was rebuilt
        """
        state = db.get_chunk_state(self.db_path)
        if state == self._synced_state:
            return False

        logger.info(
            "knowledge_store_reloading",
            indexed_chunks=self._synced_state[0],
            stored_chunks=state[0],
        )
        self._load_index()
        return True

    def check_model(self, model: str, dimension: int) -> None:
        """Ensure a vector from `model` is comparable with the stored ones.

        Raises:
            ConfigurationError: If the knowledge base was built with another
                model or dimension
        """
        metadata = db.get_index_metadata(self.db_path)
        if metadata is None:
            return

        if metadata["embedding_model"] != model or metadata["embedding_dimension"] != dimension:
            raise ConfigurationError(
                f"Knowledge base was built with {metadata['embedding_model']} "
                f"(dim={metadata['embedding_dimension']}), but got {model} "
                f"(dim={dimension}). Re-ingest the knowledge base with one model."
            )

    def insert_chunk(
        self,
        title: str,
        source_type: str,
        content: str,
        embedding: List[float],
        metadata: ChunkMetadata,
        model: str,
    ) -> KnowledgeChunk:
        """Persist one chunk and index its vector.

        Args:
            title: Logical document name
            source_type: Category tag
            content: Normalized chunk text
            embedding: Chunk vector
            metadata: Position and provenance
            model: Embedding model that produced the vector

        Returns:
            The stored chunk with its generated ID

        Raises:
            ConfigurationError: On model/dimension mismatch
            StorageError: If the row cannot be written
        """
        vector = to_float32(embedding)
        self.refresh()
        self.check_model(model, vector.shape[0])

        chunk_id = db.insert_chunk(
            title=title,
            source_type=source_type,
            content=content,
            embedding=vector.tobytes(),
            chunk_index=metadata.chunk_index,
            total_chunks=metadata.total_chunks,
            ingested_at=metadata.ingested_at,
            file_url=metadata.file_url,
            storage_path=metadata.storage_path,
            extra=metadata.extra,
            db_path=self.db_path,
        )

        if self.vector_index.size == 0:
            db.set_index_metadata(model, vector.shape[0], self.db_path)

        try:
            self.vector_index.add([chunk_id], vector)
        except ValueError as e:
            # Keep rows and index in sync: a row without a vector is unreachable
            db.delete_chunks([chunk_id], self.db_path)
            raise StorageError(f"Could not index chunk {chunk_id}: {e}") from e

        self._synced_state = (self._synced_state[0] + 1, chunk_id)

        return KnowledgeChunk(
            id=chunk_id,
            title=title,
            content=content,
            source_type=source_type,
            metadata=metadata,
            embedding=list(embedding),
        )

    def search(
        self,
        query_vector: List[float],
        threshold: float,
        limit: int,
        model: Optional[str] = None,
    ) -> List[SearchHit]:
        """Find the chunks most similar to a query vector.

        Args:
            query_vector: Query embedding
            threshold: Minimum cosine similarity (inclusive)
            limit: Maximum number of hits
            model: Embedding model of the query (checked when given)

        Returns:
            Hits ordered by descending score, all scoring >= threshold
        """
        vector = to_float32(query_vector)
        self.refresh()
        if model is not None:
            self.check_model(model, vector.shape[0])

        if self.vector_index.size == 0:
            return []

        if self.vector_index.dimension != vector.shape[0]:
            raise ConfigurationError(
                f"Query dimension {vector.shape[0]} does not match "
                f"knowledge base dimension {self.vector_index.dimension}"
            )

        matches = [
            (chunk_id, score)
            for chunk_id, score in self.vector_index.search(vector, limit)
            if score >= threshold
        ]
        if not matches:
            return []

        rows = {row["id"]: row for row in db.get_chunks_by_ids(
            [chunk_id for chunk_id, _ in matches], self.db_path
        )}

        hits = []
        for chunk_id, score in matches:
            row = rows.get(chunk_id)
            if row is None:
                logger.warning("indexed_chunk_missing_row", chunk_id=chunk_id)
                continue
            hits.append(SearchHit(chunk=KnowledgeChunk.from_row(row), score=score))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits

    def list_documents(self) -> List[DocumentSummary]:
        """One summary per (title, source_type)."""
        return [
            DocumentSummary(
                title=row["title"],
                source_type=row["source_type"],
                chunk_count=row["chunk_count"],
                created_at=row["created_at"],
                file_url=row["file_url"],
                storage_path=row["storage_path"],
            )
            for row in db.list_document_groups(self.db_path)
        ]

    def get_representative_chunk(self, title: str, source_type: str) -> Optional[KnowledgeChunk]:
        """First chunk of a document, or None if the document doesn't exist."""
        row = db.get_first_chunk(title, source_type, self.db_path)
        return KnowledgeChunk.from_row(row) if row else None

    def delete_document_rows(self, title: str, source_type: str) -> int:
        """Delete every chunk of a document.

        Returns:
            Number of chunks deleted
        """
        return self.delete_rows(db.get_document_chunk_ids(title, source_type, self.db_path))

    def find_by_blob(
        self, file_url: Optional[str] = None, storage_path: Optional[str] = None
    ) -> List[int]:
        """IDs of chunks whose blob pointer matches the URL or storage path."""
        return db.get_blob_chunk_ids(file_url, storage_path, self.db_path)

    def delete_rows(self, ids: List[int]) -> int:
        """Delete chunks by ID from both SQLite and the vector index."""
        if not ids:
            return 0

        self.refresh()
        deleted = db.delete_chunks(ids, self.db_path)
        self.vector_index.remove(ids)
        # A deleted highest id shows up as a changed state and costs one reload
        self._synced_state = (self._synced_state[0] - deleted, self._synced_state[1])

        if self.vector_index.size == 0:
            db.clear_index_metadata(self.db_path)
            self.vector_index.reset()

        return deleted

    def count_chunks(self) -> int:
        return db.get_chunk_count(self.db_path)

    def get_stats(self) -> Dict[str, Any]:
        """Stored chunk count plus statistics of the (refreshed) vector index."""
        self.refresh()
        stats = self.vector_index.get_stats()
        stats["chunks"] = self.count_chunks()
        return stats
