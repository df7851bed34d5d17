"""Knowledge-base document listing and deletion.

Deleting a document removes its source blob and then every chunk row. A
failed blob deletion is logged and tolerated: a dangling blob is better than
a knowledge entry that can no longer be deleted. A failed row deletion is an
error.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from kbchat.errors import StorageError
from kbchat.rag.blobs import LocalBlobStorage
from kbchat.rag.knowledge_store import DocumentSummary, KnowledgeStore

logger = structlog.get_logger()


@dataclass
class DeletionResult:
    chunks_deleted: int
    blob_deleted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "chunksDeleted": self.chunks_deleted,
            "blobDeleted": self.blob_deleted,
        }


class DocumentManager:
    """Lifecycle operations on logical documents."""

    def __init__(self, store: KnowledgeStore, blob_storage: Optional[LocalBlobStorage] = None):
        self.store = store
        self.blob_storage = blob_storage

    def list_documents(self) -> List[DocumentSummary]:
        """One summary per (title, source_type), newest first."""
        return self.store.list_documents()

    def _remove_blob(self, storage_path: Optional[str], file_url: Optional[str]) -> bool:
        """Delete a document's source blob, tolerating failure.

        Returns:
            True if a blob was deleted
        """
        if self.blob_storage is None:
            return False

        if not storage_path and file_url:
            storage_path = self.blob_storage.path_from_url(file_url)
        if not storage_path:
            return False

        try:
            self.blob_storage.remove(storage_path)
        except StorageError as e:
            logger.warning("blob_delete_failed", storage_path=storage_path, error=str(e))
            return False
        return True

    def delete_document(self, title: str, source_type: str) -> DeletionResult:
        """Delete a document's blob and all of its chunks.

        Returns:
            DeletionResult; chunks_deleted is 0 for an unknown document

        Raises:
            StorageError: If the chunk rows cannot be deleted
        """
        representative = self.store.get_representative_chunk(title, source_type)
        if representative is None:
            logger.info("document_not_found", title=title, source_type=source_type)
            return DeletionResult(chunks_deleted=0, blob_deleted=False)

        metadata = representative.metadata
        blob_deleted = self._remove_blob(metadata.storage_path, metadata.file_url)
        deleted = self.store.delete_document_rows(title, source_type)

        logger.info(
            "document_deleted",
            title=title,
            source_type=source_type,
            chunks_deleted=deleted,
            blob_deleted=blob_deleted,
        )
        return DeletionResult(chunks_deleted=deleted, blob_deleted=blob_deleted)

    def delete_by_blob(self, reference: str) -> DeletionResult:
        """Delete a blob and every chunk pointing at it.

        Args:
            reference: Public URL of the blob or its path in the bucket

        Raises:
            ValueError: If the reference is empty
            StorageError: If the chunk rows cannot be deleted
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("A file URL or storage path is required")

        if reference.startswith(("http://", "https://")):
            file_url = reference
            storage_path = self.blob_storage.path_from_url(reference) if self.blob_storage else None
        else:
            storage_path = reference
            file_url = self.blob_storage.public_url(reference) if self.blob_storage else None

        blob_deleted = self._remove_blob(storage_path, file_url)
        deleted = self.store.delete_rows(self.store.find_by_blob(file_url, storage_path))

        logger.info(
            "blob_document_deleted",
            reference=reference,
            chunks_deleted=deleted,
            blob_deleted=blob_deleted,
        )
        return DeletionResult(chunks_deleted=deleted, blob_deleted=blob_deleted)
