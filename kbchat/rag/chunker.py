"""Text chunking with overlap for RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
The boundary search is a heuristic, not a sentence splitter: text without
periods or newlines over a long stretch is cut mid-word at the hard limit.
"""
from typing import List
from dataclasses import dataclass
import structlog

from kbchat import config

logger = structlog.get_logger()


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)
        """
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        # Validate parameters
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap ({self.chunk_overlap}) must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Chunk contents are trimmed of surrounding whitespace and may be empty;
        callers decide which chunks are too short to keep.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects in document order
        """
        if not text:
            return []

        text_length = len(text)
        chunks = []
        start = 0

        while start < text_length:
            end = start + self.chunk_size

            # Prefer to cut just after a period or newline, but only if the
            # chunk keeps more than half of the target size
            if end < text_length:
                best_cut = max(text.rfind(".", 0, end + 1), text.rfind("\n", 0, end + 1))
                if best_cut > start + self.chunk_size * 0.5:
                    end = best_cut + 1

            end = min(end, text_length)
            chunks.append(
                TextChunk(
                    content=text[start:end].strip(),
                    char_start=start,
                    char_end=end,
                    chunk_index=len(chunks),
                )
            )

            if end >= text_length:
                break

            next_start = max(end - self.chunk_overlap, 0)

            # Prevent infinite loop if overlap swallows all progress
            if next_start <= start:
                next_start = end

            start = next_start

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
        )

        return chunks

    def split(self, text: str) -> List[str]:
        """Split text into chunk strings.

        Args:
            text: Text to chunk

        Returns:
            Ordered list of chunk contents
        """
        return [chunk.content for chunk in self.chunk_text(text)]


def chunk(text: str, max_length: int = None, overlap_length: int = None) -> List[str]:
    """Chunk text with the given limits (convenience function).

    Args:
        text: Text to chunk
        max_length: Maximum chunk size in characters
        overlap_length: Characters shared between consecutive chunks

    Returns:
        Ordered list of chunk contents
    """
    return TextChunker(chunk_size=max_length, chunk_overlap=overlap_length).split(text)
