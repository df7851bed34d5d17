"""FAISS vector index for cosine-similarity search.

Handles:
- Dimension detection from the first vector added
- Cosine similarity via inner product over L2-normalized vectors
- Addition and removal keyed by chunk ID
"""
from typing import List, Tuple, Optional, Dict, Any
import numpy as np
import faiss
import structlog

logger = structlog.get_logger()


def to_float32(vector: List[float]) -> np.ndarray:
    """Convert a vector to a 1-D float32 array."""
    return np.asarray(vector, dtype=np.float32).reshape(-1)


class VectorIndex:
    """In-memory FAISS index mapping chunk IDs to normalized vectors."""

    def __init__(self, dimension: Optional[int] = None):
        """Initialize the vector index.

        Args:
            dimension: Embedding dimension (detected on first add if not provided)
        """
        self.dimension: Optional[int] = None
        self.index: Optional[faiss.Index] = None
        if dimension is not None:
            self._init_index(dimension)

    def _init_index(self, dimension: int) -> None:
        self.dimension = dimension
        # IndexFlatIP on normalized vectors = exact cosine similarity
        self.index = faiss.IndexIDMap(faiss.IndexFlatIP(dimension))
        logger.debug("faiss_index_initialized", dimension=dimension, index_type="IndexFlatIP")

    @property
    def size(self) -> int:
        return self.index.ntotal if self.index is not None else 0

    def _prepare(self, vectors: np.ndarray) -> np.ndarray:
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)

        if self.index is None:
            self._init_index(vectors.shape[1])

        if vectors.shape[1] != self.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {vectors.shape[1]}"
            )

        vectors = vectors.copy()
        faiss.normalize_L2(vectors)
        return vectors

    def add(self, ids: List[int], vectors: np.ndarray) -> None:
        """Add vectors under the given chunk IDs.

        Raises:
            ValueError: If ids and vectors disagree or dimensions mismatch
        """
        if not len(ids):
            return

        prepared = self._prepare(vectors)
        if prepared.shape[0] != len(ids):
            raise ValueError(f"Got {len(ids)} ids for {prepared.shape[0]} vectors")

        self.index.add_with_ids(prepared, np.asarray(ids, dtype=np.int64))

    def remove(self, ids: List[int]) -> int:
        """Remove vectors by chunk ID.

        Returns:
            Number of vectors removed
        """
        if self.index is None or not ids:
            return 0
        return int(self.index.remove_ids(np.asarray(ids, dtype=np.int64)))

    def search(self, query: List[float], top_k: int) -> List[Tuple[int, float]]:
        """Search for the most similar vectors.

        Args:
            query: Query vector
            top_k: Maximum number of results

        Returns:
            List of (chunk_id, cosine similarity), best first
        """
        if self.index is None or self.index.ntotal == 0 or top_k <= 0:
            return []

        query_vector = self._prepare(to_float32(query))

        # Ensure we don't request more results than we have
        top_k = min(top_k, self.index.ntotal)
        scores, ids = self.index.search(query_vector, top_k)

        return [
            (int(chunk_id), float(score))
            for chunk_id, score in zip(ids[0].tolist(), scores[0].tolist())
            if chunk_id != -1
        ]

    def reset(self) -> None:
        """Drop all vectors and forget the dimension."""
        self.index = None
        self.dimension = None

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index."""
        return {
            "initialized": self.index is not None,
            "vector_count": self.size,
            "dimension": self.dimension,
        }
