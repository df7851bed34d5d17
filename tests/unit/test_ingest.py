"""Tests for the ingestion pipeline."""
import pytest

from kbchat import db
from kbchat.errors import EmbeddingProviderError, ExtractionError, StorageError
from kbchat.rag.blobs import BlobReference
from kbchat.rag.ingest import IngestionPipeline


def _rows(db_path):
    with db.transaction(db_path) as cursor:
        cursor.execute(
            "SELECT title, content, chunk_index, total_chunks, ingested_at, file_url, storage_path "
            "FROM chunks ORDER BY id"
        )
        return [dict(row) for row in cursor.fetchall()]


def _paragraphs(count: int) -> str:
    return "\n".join(
        f"Section {i}: check the engine and the chain before every use, section {i}."
        for i in range(count)
    )


@pytest.mark.asyncio
async def test_ingest_text_stores_single_chunk(pipeline, db_path, manual_text):
    """A short document becomes one stored chunk."""
    result = await pipeline.ingest_text("Brush Cutter Manual", "pdf", manual_text)

    assert result.chunks_stored == 1
    assert result.to_dict() == {
        "success": True,
        "chunks": 1,
        "message": "1 chunks processed successfully.",
    }
    rows = _rows(db_path)
    assert rows[0]["chunk_index"] == 0
    assert rows[0]["total_chunks"] == 1
    assert not rows[0]["content"].startswith("#")


@pytest.mark.asyncio
async def test_short_chunks_are_skipped_and_indices_stay_contiguous(embedding_client, store, db_path):
    """Chunks below the minimum length are skipped without index gaps."""
    pipeline = IngestionPipeline(embedding_client, store, chunk_size=100, chunk_overlap=0)
    text = "A" * 99 + "." + "B" * 99 + "." + "Short tail."

    result = await pipeline.ingest_text("Doc", "document", text)

    assert result.chunks_stored == 2
    assert result.chunks_skipped == 1
    rows = _rows(db_path)
    assert [row["chunk_index"] for row in rows] == [0, 1]
    assert {row["total_chunks"] for row in rows} == {2}
    assert "Short tail." not in [row["content"] for row in rows]


@pytest.mark.asyncio
async def test_2500_character_document_yields_three_or_four_chunks(pipeline, db_path):
    """A 2500-character document is stored as three or four chunks."""
    sentence = "Clean the air filter after every ten hours of use. "
    text = (sentence * 60)[:2500]

    result = await pipeline.ingest_text("Maintenance", "document", text)

    assert 3 <= result.chunks_stored <= 4
    rows = _rows(db_path)
    assert len(rows) == result.chunks_stored
    assert {row["total_chunks"] for row in rows} == {result.chunks_stored}
    assert len({row["ingested_at"] for row in rows}) == 1


@pytest.mark.asyncio
async def test_empty_text_raises_extraction_error(pipeline):
    """Text that normalizes to nothing fails ingestion."""
    with pytest.raises(ExtractionError):
        await pipeline.ingest_text("Doc", "document", "   ")
    with pytest.raises(ExtractionError):
        await pipeline.ingest_text("Doc", "document", "<div></div>\n\n![logo](logo.png)")


@pytest.mark.asyncio
async def test_title_and_source_type_are_required(pipeline):
    """Title and source type must not be blank."""
    with pytest.raises(ValueError):
        await pipeline.ingest_text("", "document", "Some text long enough to be a chunk.")
    with pytest.raises(ValueError):
        await pipeline.ingest_text("Doc", " ", "Some text long enough to be a chunk.")


@pytest.mark.asyncio
async def test_embedding_failure_keeps_earlier_chunks(embedding_client, store, provider_client, db_path):
    """Chunks stored before an embedding failure stay stored."""
    pipeline = IngestionPipeline(embedding_client, store, chunk_size=100, chunk_overlap=0)
    text = "A" * 99 + "." + "B" * 99 + "." + "C" * 99 + "."
    provider_client.fail_embed_on = "BBBB"

    with pytest.raises(EmbeddingProviderError) as exc_info:
        await pipeline.ingest_text("Doc", "document", text)

    assert exc_info.value.chunk_index == 1
    assert exc_info.value.retryable is True
    rows = _rows(db_path)
    assert [row["chunk_index"] for row in rows] == [0]
    assert rows[0]["total_chunks"] == 3
    # Nothing after the failing chunk was embedded
    assert not any(call.startswith("C") for call in provider_client.embed_calls)


@pytest.mark.asyncio
async def test_storage_failure_reports_chunk_index(embedding_client, store, monkeypatch):
    """A failed insert reports the index of the failing chunk."""
    pipeline = IngestionPipeline(embedding_client, store)

    def fail_insert(**kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "insert_chunk", fail_insert)

    with pytest.raises(StorageError) as exc_info:
        await pipeline.ingest_text("Doc", "document", _paragraphs(3))

    assert exc_info.value.chunk_index == 0


@pytest.mark.asyncio
async def test_concurrent_embedding_inserts_in_order(embedding_client, store, db_path):
    """Concurrent embedding still stores chunks in order."""
    pipeline = IngestionPipeline(
        embedding_client, store, chunk_size=200, chunk_overlap=20, concurrency=3
    )

    result = await pipeline.ingest_text("Doc", "document", _paragraphs(12))

    rows = _rows(db_path)
    assert result.chunks_stored == len(rows) > 3
    assert [row["chunk_index"] for row in rows] == list(range(len(rows)))


@pytest.mark.asyncio
async def test_concurrent_failure_aborts_at_first_failed_chunk(
    embedding_client, store, provider_client, db_path
):
    """With concurrency, nothing after the first failed chunk is stored."""
    pipeline = IngestionPipeline(
        embedding_client, store, chunk_size=100, chunk_overlap=0, concurrency=2
    )
    text = "".join(ch * 99 + "." for ch in "ABCDE")
    provider_client.fail_embed_on = "DDDD"

    with pytest.raises(EmbeddingProviderError) as exc_info:
        await pipeline.ingest_text("Doc", "document", text)

    assert exc_info.value.chunk_index == 3
    assert [row["chunk_index"] for row in _rows(db_path)] == [0, 1, 2]


@pytest.mark.asyncio
async def test_replace_reindexes_document(pipeline, store, manual_text):
    """replace=True swaps the old chunks for the new ones."""
    await pipeline.ingest_text("Manual", "pdf", manual_text)
    await pipeline.ingest_text("Manual", "pdf", manual_text, replace=True)

    assert store.count_chunks() == 1


@pytest.mark.asyncio
async def test_without_replace_documents_accumulate(pipeline, store, manual_text):
    """Without replace a second ingestion adds another copy."""
    await pipeline.ingest_text("Manual", "pdf", manual_text)
    await pipeline.ingest_text("Manual", "pdf", manual_text)

    assert store.count_chunks() == 2


@pytest.mark.asyncio
async def test_progress_callback_reports_each_chunk(embedding_client, store):
    """The progress callback runs once per stored chunk."""
    pipeline = IngestionPipeline(embedding_client, store, chunk_size=100, chunk_overlap=0)
    progress = []

    await pipeline.ingest_text(
        "Doc",
        "document",
        "A" * 99 + "." + "B" * 99 + ".",
        progress_callback=lambda current, total: progress.append((current, total)),
    )

    assert progress == [(1, 2), (2, 2)]


@pytest.mark.asyncio
async def test_ingest_source_from_blob_records_pointers(pipeline, blob_storage, db_path, manual_text):
    """Chunks ingested from a blob record its URL and path."""
    url = blob_storage.upload("documents/1-manual.md", manual_text.encode("utf-8"))

    result = await pipeline.ingest_source(
        "Brush Cutter Manual", "document", BlobReference("documents/1-manual.md")
    )

    assert result.chunks_stored == 1
    assert result.file_url == url
    row = _rows(db_path)[0]
    assert row["file_url"] == url
    assert row["storage_path"] == "documents/1-manual.md"


@pytest.mark.asyncio
async def test_ingest_source_missing_blob_raises_storage_error(pipeline):
    """A missing blob fails with StorageError."""
    with pytest.raises(StorageError):
        await pipeline.ingest_source("Doc", "pdf", BlobReference("documents/missing.pdf"))


@pytest.mark.asyncio
async def test_ingest_source_requires_blob_storage(embedding_client, store):
    """Blob references need a configured blob storage."""
    pipeline = IngestionPipeline(embedding_client, store)

    with pytest.raises(StorageError):
        await pipeline.ingest_source("Doc", "pdf", BlobReference("documents/a.pdf"))
