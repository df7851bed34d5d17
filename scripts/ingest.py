#!/usr/bin/env python
"""Manage the knowledge base from the command line.

Usage:
    python scripts/ingest.py manual.pdf                      # Ingest a file
    python scripts/ingest.py faq.md --title FAQ --replace    # Re-index a document
    python scripts/ingest.py manual.pdf --store-blob         # Keep the PDF in blob storage
    python scripts/ingest.py --list                          # List documents
    python scripts/ingest.py --delete "FAQ" document         # Delete a document
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import structlog

from kbchat import config
from kbchat.errors import KBChatError
from kbchat.log import configure_logging
from kbchat.rag.blobs import BlobReference, validate_upload
from kbchat.rag.extract import extract_text
from kbchat.services import Services, build_services

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, title: str):
        self.title = title
        self.start_time = None

    def start(self):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  Ingesting: {self.title}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)
        print(f"\r  [{bar}] {percentage:5.1f}% ({current}/{total} chunks)", end="", flush=True)

    def finish(self, chunks_stored: int, chunks_skipped: int):
        print("\n")
        elapsed = (datetime.now() - self.start_time).total_seconds()
        print(f"  Chunks stored:   {chunks_stored}")
        print(f"  Chunks skipped:  {chunks_skipped}")
        print(f"  Time elapsed:    {elapsed:.1f}s\n")


async def ingest_file(services: Services, args: argparse.Namespace) -> int:
    path: Path = args.file
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    data = path.read_bytes()
    validate_upload(path.name, len(data))

    title = args.title or path.stem
    progress = ProgressReporter(title)
    progress.start()

    if args.store_blob:
        storage_path = services.blob_storage.new_upload_path(path.name)
        services.blob_storage.upload(storage_path, data)
        result = await services.pipeline.ingest_source(
            title,
            args.source_type,
            BlobReference(storage_path),
            replace=args.replace,
            progress_callback=progress.update,
        )
    else:
        result = await services.pipeline.ingest_text(
            title,
            args.source_type,
            extract_text(data, filename=path.name),
            extra_metadata={"source_file": path.name},
            replace=args.replace,
            progress_callback=progress.update,
        )

    progress.finish(result.chunks_stored, result.chunks_skipped)
    return 0


def list_documents(services: Services) -> int:
    documents = services.documents.list_documents()
    if not documents:
        print("\nKnowledge base is empty.\n")
        return 0

    print(f"\n{'TITLE':<40} {'TYPE':<12} {'CHUNKS':>6}  CREATED")
    for doc in documents:
        print(f"{doc.title[:40]:<40} {doc.source_type[:12]:<12} {doc.chunk_count:>6}  {doc.created_at}")
    print()
    return 0


def delete_document(services: Services, title: str, source_type: str) -> int:
    result = services.documents.delete_document(title, source_type)
    if result.chunks_deleted == 0:
        print(f"\nNo document '{title}' ({source_type}) found.\n")
        return 1

    blob = ", blob removed" if result.blob_deleted else ""
    print(f"\nDeleted '{title}' ({source_type}): {result.chunks_deleted} chunks{blob}.\n")
    return 0


async def main() -> int:
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest, list or delete knowledge-base documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("file", type=Path, nargs="?", help="Text, markdown or PDF file to ingest")
    parser.add_argument("--title", help="Document title (default: file name without extension)")
    parser.add_argument("--source-type", default="document", help="Source type tag (default: document)")
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Delete existing chunks of the same title and source type first",
    )
    parser.add_argument(
        "--store-blob",
        action="store_true",
        help="Keep the file in blob storage and link it from the chunks",
    )
    parser.add_argument("--list", action="store_true", help="List the knowledge base")
    parser.add_argument(
        "--delete",
        nargs=2,
        metavar=("TITLE", "SOURCE_TYPE"),
        help="Delete a document and its blob",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs")

    args = parser.parse_args()

    if not args.file and not args.list and not args.delete:
        parser.error("a file, --list or --delete is required")

    configure_logging("DEBUG" if args.verbose else "WARNING")

    try:
        services = build_services()

        if args.list:
            return list_documents(services)
        if args.delete:
            return delete_document(services, *args.delete)

        print("\nConfiguration:")
        print(f"   Provider:         {services.settings.provider}")
        print(f"   Embedding model:  {services.settings.embedding_model}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
        return await ingest_file(services, args)

    except KeyboardInterrupt:
        print("\n\nIngestion cancelled by user.\n")
        return 1

    except (FileNotFoundError, ValueError) as e:
        print(f"\nError: {e}\n")
        return 1

    except KBChatError as e:
        print(f"\nError: {e}\n")
        if e.chunk_index is not None:
            print(f"   Chunks before {e.chunk_index} were stored; re-run with --replace.\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
