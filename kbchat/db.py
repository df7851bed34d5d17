"""Database initialization and helpers for the knowledge-base chat service.

SQLite database for storing:
- Knowledge chunks (content, embedding bytes, position and blob pointer)
- The embedding model and dimension the knowledge base was built with
- Conversations and their append-only message logs
"""
import sqlite3
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator, Tuple
from datetime import datetime, timezone
import structlog

from kbchat import config
from kbchat.errors import StorageError

logger = structlog.get_logger()


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Args:
        db_path: Database file (defaults to config.DB_PATH)

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    conn = sqlite3.connect(db_path or config.DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: Optional[Path] = None, action: str = "query") -> Iterator[sqlite3.Cursor]:
    """Yield a cursor inside a transaction.

    Commits on success, rolls back and raises StorageError on database errors.

    Args:
        db_path: Database file (defaults to config.DB_PATH)
        action: Short name of the operation, used in logs and errors
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        logger.error("database_connect_failed", action=action, error=str(e))
        raise StorageError(f"Could not open database for {action}: {e}") from e

    try:
        yield conn.cursor()
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error("database_operation_failed", action=action, error=str(e))
        raise StorageError(f"Database {action} failed: {e}") from e
    finally:
        conn.close()


def init_database(db_path: Optional[Path] = None) -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - index_metadata: embedding model and dimension of the knowledge base
    - chunks: knowledge chunks with embeddings and metadata
    - conversations / messages: chat history
    """
    with transaction(db_path, "init") as cursor:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_metadata (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                embedding_model TEXT NOT NULL,
                embedding_dimension INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                source_type TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB NOT NULL,
                chunk_index INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                ingested_at TEXT NOT NULL,
                file_url TEXT,
                storage_path TEXT,
                metadata_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_document
            ON chunks(title, source_type)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                customer_id TEXT,
                status TEXT NOT NULL,
                channel TEXT,
                subject TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(id) ON DELETE CASCADE,
                sender_type TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(conversation_id, id)
        """)

    logger.info("database_initialized", db_path=str(db_path or config.DB_PATH))


# ---------------------------------------------------------------------------
# Index metadata
# ---------------------------------------------------------------------------

def get_index_metadata(db_path: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Get the embedding model and dimension the knowledge base was built with.

    Returns:
        Dictionary with metadata fields, or None if nothing was indexed yet
    """
    with transaction(db_path, "index_metadata_read") as cursor:
        cursor.execute("SELECT * FROM index_metadata WHERE id = 1")
        row = cursor.fetchone()
    return dict(row) if row else None


def set_index_metadata(
    embedding_model: str, embedding_dimension: int, db_path: Optional[Path] = None
) -> None:
    """Record the embedding model and dimension (first write wins)."""
    with transaction(db_path, "index_metadata_write") as cursor:
        cursor.execute("""
            INSERT OR IGNORE INTO index_metadata (
                id, embedding_model, embedding_dimension, created_at
            ) VALUES (1, ?, ?, ?)
        """, (embedding_model, embedding_dimension, utcnow()))
    logger.info(
        "index_metadata_recorded",
        embedding_model=embedding_model,
        embedding_dimension=embedding_dimension,
    )


def clear_index_metadata(db_path: Optional[Path] = None) -> None:
    """Forget the recorded model; used when the knowledge base becomes empty."""
    with transaction(db_path, "index_metadata_clear") as cursor:
        cursor.execute("DELETE FROM index_metadata")


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

def _chunk_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    chunk = dict(row)
    chunk.pop("embedding", None)
    raw = chunk.pop("metadata_json", None)
    chunk["extra"] = json.loads(raw) if raw else {}
    return chunk


def insert_chunk(
    title: str,
    source_type: str,
    content: str,
    embedding: bytes,
    chunk_index: int,
    total_chunks: int,
    ingested_at: str,
    file_url: Optional[str] = None,
    storage_path: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    db_path: Optional[Path] = None,
) -> int:
    """Insert a knowledge chunk.

    Returns:
        ID of the inserted chunk row
    """
    with transaction(db_path, "chunk_insert") as cursor:
        cursor.execute("""
            INSERT INTO chunks (
                title, source_type, content, embedding,
                chunk_index, total_chunks, ingested_at,
                file_url, storage_path, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            title,
            source_type,
            content,
            embedding,
            chunk_index,
            total_chunks,
            ingested_at,
            file_url,
            storage_path,
            json.dumps(extra) if extra else None,
            utcnow(),
        ))
        return cursor.lastrowid


def get_chunks_by_ids(ids: List[int], db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Retrieve chunks (without embeddings) by their IDs."""
    if not ids:
        return []

    placeholders = ",".join("?" * len(ids))
    with transaction(db_path, "chunk_lookup") as cursor:
        cursor.execute(f"SELECT * FROM chunks WHERE id IN ({placeholders})", list(ids))
        rows = cursor.fetchall()
    return [_chunk_row_to_dict(row) for row in rows]


def iter_embeddings(db_path: Optional[Path] = None) -> List[Tuple[int, bytes]]:
    """All (chunk id, embedding bytes) pairs, used to rebuild the vector index."""
    with transaction(db_path, "embedding_scan") as cursor:
        cursor.execute("SELECT id, embedding FROM chunks ORDER BY id")
        return [(row["id"], row["embedding"]) for row in cursor.fetchall()]


def list_document_groups(db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Aggregate chunks per (title, source_type).

    Returns:
        One row per document with chunk_count and earliest ingested_at,
        newest documents first
    """
    with transaction(db_path, "document_list") as cursor:
        cursor.execute("""
            SELECT
                title,
                source_type,
                COUNT(*) AS chunk_count,
                MIN(ingested_at) AS created_at,
                MAX(file_url) AS file_url,
                MAX(storage_path) AS storage_path
            FROM chunks
            GROUP BY title, source_type
            ORDER BY created_at DESC, title, source_type
        """)
        return [dict(row) for row in cursor.fetchall()]


def get_first_chunk(
    title: str, source_type: str, db_path: Optional[Path] = None
) -> Optional[Dict[str, Any]]:
    """Get one representative chunk of a document (lowest chunk_index)."""
    with transaction(db_path, "document_lookup") as cursor:
        cursor.execute("""
            SELECT * FROM chunks
            WHERE title = ? AND source_type = ?
            ORDER BY chunk_index, id
            LIMIT 1
        """, (title, source_type))
        row = cursor.fetchone()
    return _chunk_row_to_dict(row) if row else None


def get_document_chunk_ids(
    title: str, source_type: str, db_path: Optional[Path] = None
) -> List[int]:
    """IDs of every chunk of a document."""
    with transaction(db_path, "document_lookup") as cursor:
        cursor.execute(
            "SELECT id FROM chunks WHERE title = ? AND source_type = ?",
            (title, source_type),
        )
        return [row["id"] for row in cursor.fetchall()]


def get_blob_chunk_ids(
    file_url: Optional[str] = None,
    storage_path: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> List[int]:
    """IDs of every chunk pointing at a blob, matched by URL or storage path."""
    clauses = []
    params = []
    if file_url:
        clauses.append("file_url = ?")
        params.append(file_url)
    if storage_path:
        clauses.append("storage_path = ?")
        params.append(storage_path)
    if not clauses:
        return []

    with transaction(db_path, "blob_lookup") as cursor:
        cursor.execute(f"SELECT id FROM chunks WHERE {' OR '.join(clauses)}", params)
        return [row["id"] for row in cursor.fetchall()]


def delete_chunks(ids: List[int], db_path: Optional[Path] = None) -> int:
    """Delete chunks by ID.

    Returns:
        Number of chunks deleted
    """
    if not ids:
        return 0

    placeholders = ",".join("?" * len(ids))
    with transaction(db_path, "chunk_delete") as cursor:
        cursor.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", list(ids))
        count = cursor.rowcount

    logger.info("chunks_deleted", count=count)
    return count


def get_chunk_state(db_path: Optional[Path] = None) -> Tuple[int, int]:
    """Row count and highest chunk ID, used to detect writes by other processes.

    Chunk IDs are never reused (AUTOINCREMENT), so any insert raises the
    highest ID and any delete lowers the count.
    """
    with transaction(db_path, "chunk_state") as cursor:
        cursor.execute("SELECT COUNT(*), COALESCE(MAX(id), 0) FROM chunks")
        count, max_id = cursor.fetchone()
    return count, max_id


def get_chunk_count(db_path: Optional[Path] = None) -> int:
    """Get the total number of chunks in the database."""
    with transaction(db_path, "chunk_count") as cursor:
        cursor.execute("SELECT COUNT(*) FROM chunks")
        return cursor.fetchone()[0]


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------

def create_conversation(
    conversation_id: str,
    status: str,
    customer_id: Optional[str] = None,
    channel: Optional[str] = None,
    subject: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> None:
    """Insert a new conversation row."""
    now = utcnow()
    with transaction(db_path, "conversation_create") as cursor:
        cursor.execute("""
            INSERT INTO conversations (
                id, customer_id, status, channel, subject, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (conversation_id, customer_id, status, channel, subject, now, now))


def get_conversation(
    conversation_id: str, db_path: Optional[Path] = None
) -> Optional[Dict[str, Any]]:
    """Get a conversation by ID, or None if it doesn't exist."""
    with transaction(db_path, "conversation_get") as cursor:
        cursor.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        row = cursor.fetchone()
    return dict(row) if row else None


def list_conversations(limit: int = 50, db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """List conversations, most recently updated first."""
    with transaction(db_path, "conversation_list") as cursor:
        cursor.execute(
            "SELECT * FROM conversations ORDER BY updated_at DESC LIMIT ?", (limit,)
        )
        return [dict(row) for row in cursor.fetchall()]


def update_conversation(
    conversation_id: str, status: Optional[str] = None, db_path: Optional[Path] = None
) -> bool:
    """Refresh updated_at (and optionally the status) of a conversation.

    Returns:
        True if the conversation exists
    """
    with transaction(db_path, "conversation_update") as cursor:
        if status is None:
            cursor.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utcnow(), conversation_id),
            )
        else:
            cursor.execute(
                "UPDATE conversations SET status = ?, updated_at = ? WHERE id = ?",
                (status, utcnow(), conversation_id),
            )
        return cursor.rowcount > 0


def add_message(
    conversation_id: str,
    sender_type: str,
    content: str,
    db_path: Optional[Path] = None,
) -> int:
    """Append a message to a conversation.

    Returns:
        ID of the inserted message
    """
    with transaction(db_path, "message_insert") as cursor:
        cursor.execute("""
            INSERT INTO messages (conversation_id, sender_type, content, created_at)
            VALUES (?, ?, ?, ?)
        """, (conversation_id, sender_type, content, utcnow()))
        return cursor.lastrowid


def add_turn(
    conversation_id: str,
    question: str,
    answer: str,
    db_path: Optional[Path] = None,
) -> Tuple[int, int]:
    """Store a customer question and the AI answer as one unit.

    Both messages are inserted and the conversation's updated_at refreshed in
    a single transaction, so a failure leaves no half-stored turn.

    Returns:
        IDs of the question and answer messages
    """
    now = utcnow()
    with transaction(db_path, "turn_insert") as cursor:
        cursor.execute("""
            INSERT INTO messages (conversation_id, sender_type, content, created_at)
            VALUES (?, 'customer', ?, ?)
        """, (conversation_id, question, now))
        question_id = cursor.lastrowid

        cursor.execute("""
            INSERT INTO messages (conversation_id, sender_type, content, created_at)
            VALUES (?, 'ai_agent', ?, ?)
        """, (conversation_id, answer, now))
        answer_id = cursor.lastrowid

        cursor.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (now, conversation_id),
        )
    return question_id, answer_id


def get_messages(conversation_id: str, db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """All messages of a conversation in chronological order."""
    with transaction(db_path, "message_list") as cursor:
        cursor.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        )
        return [dict(row) for row in cursor.fetchall()]


def get_recent_messages(
    conversation_id: str, limit: int, db_path: Optional[Path] = None
) -> List[Dict[str, Any]]:
    """The last `limit` messages of a conversation in chronological order."""
    with transaction(db_path, "message_recent") as cursor:
        cursor.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id DESC LIMIT ?",
            (conversation_id, limit),
        )
        rows = [dict(row) for row in cursor.fetchall()]
    rows.reverse()
    return rows
