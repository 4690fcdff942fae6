"""SQLite storage layer for sessions, memories, and their embeddings.

This module provides the source-of-truth store for engram with support for:
- Session records (lazily upserted on first write)
- Memory records with their embedding in the same row, so a record and its
  vector are written atomically or not at all
- Soft delete (``is_deleted`` flag, never reset)
- In-process exact cosine similarity for stores without a vector index
- Outbox table for vector index sync
- Schema versioning and migrations

Timestamps are persisted as epoch seconds (REAL) and exposed as
timezone-aware UTC datetimes.
"""

import json
import logging
import secrets
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from engram.errors import StoreUnavailable
from engram.memory.scoring import cosine_similarity
from engram.memory.types import Memory, Session

logger = logging.getLogger(__name__)

# Upper bound of bound parameters per IN (...) clause
_MAX_IN_PARAMS = 500

# Schema version migrations
# Each migration has a description and up SQL (can be a list of statements)
MIGRATIONS: dict[int, dict[str, Any]] = {
    1: {
        "description": "Add composite index for prune candidate selection",
        "up": [
            """CREATE INDEX IF NOT EXISTS idx_memories_prune
               ON memories(is_deleted, importance_score, last_accessed_at)""",
        ],
    },
}

_MEMORY_COLUMNS = (
    "id, session_id, text, compressed_text, importance_score, "
    "created_at, last_accessed_at, is_deleted, metadata"
)


class SQLiteStoreError(StoreUnavailable):
    """Custom exception for SQLite storage-related errors."""

    pass


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _chunks(items: Sequence[str], size: int = _MAX_IN_PARAMS) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class SQLiteStore:
    """SQLite storage layer for sessions, memories and embeddings.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.engram/engram.db
        ephemeral: If True, use in-memory storage for testing (default: False)

    Attributes:
        db_path: Path to database file (None if ephemeral)
        ephemeral: Whether using ephemeral storage
        _conn: SQLite connection instance
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
    ):
        """Initialize SQLiteStore with persistent or ephemeral storage.

        Raises:
            SQLiteStoreError: If database initialization fails
        """
        self.ephemeral = ephemeral

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".engram" / "engram.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)

            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")

            self._init_schema()

        except (sqlite3.Error, OSError) as e:
            raise SQLiteStoreError(f"Failed to initialize SQLite storage: {e}") from e

    def _init_schema(self) -> None:
        """Initialize database schema with all tables and indexes.

        Creates the following tables:
        - sessions: Session records
        - memories: Memory records including the embedding (JSON array)
        - outbox: Queue for vector index sync operations

        Raises:
            SQLiteStoreError: If schema initialization fails
        """
        try:
            cursor = self._conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    external_id TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    compressed_text TEXT NOT NULL,
                    embedding TEXT,
                    embedding_dim INTEGER,
                    importance_score REAL NOT NULL,
                    created_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT,
                    FOREIGN KEY (session_id) REFERENCES sessions(id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_session
                ON memories(session_id, is_deleted)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_created_at
                ON memories(created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_last_accessed_at
                ON memories(last_accessed_at)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    memory_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    processed_at REAL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    error_message TEXT,
                    FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_outbox_status
                ON outbox(status)
            """)

            self._conn.commit()

            self._run_migrations()

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to initialize schema: {e}") from e

    def _get_schema_version(self) -> int:
        """Get the current schema version (0 if no migrations applied)."""
        cursor = self._conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL,
                description TEXT
            )
        """)
        self._conn.commit()
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result and result[0] is not None else 0

    def _run_migrations(self) -> None:
        """Apply pending schema migrations in order, one transaction each.

        Raises:
            SQLiteStoreError: If a migration fails
        """
        current_version = self._get_schema_version()
        max_version = max(MIGRATIONS.keys()) if MIGRATIONS else 0

        if current_version >= max_version:
            return

        logger.info(f"Running migrations from v{current_version} to v{max_version}")

        for version in range(current_version + 1, max_version + 1):
            if version not in MIGRATIONS:
                continue

            migration = MIGRATIONS[version]
            description = migration.get("description", f"Migration {version}")
            up_sql = migration.get("up", [])
            if isinstance(up_sql, str):
                up_sql = [up_sql]

            try:
                cursor = self._conn.cursor()
                for sql in up_sql:
                    cursor.execute(sql)
                cursor.execute(
                    "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
                    (version, time.time(), description),
                )
                self._conn.commit()
                logger.info(f"Applied migration v{version}: {description}")

            except sqlite3.Error as e:
                self._conn.rollback()
                raise SQLiteStoreError(
                    f"Migration v{version} failed ({description}): {e}"
                ) from e

    @staticmethod
    def _generate_id() -> str:
        """Generate unique, sortable ID: mem_<microseconds>_<random>."""
        timestamp = int(time.time() * 1000000)
        return f"mem_{timestamp}_{secrets.token_hex(4)}"

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        keys = row.keys()
        embedding = None
        if "embedding" in keys and row["embedding"]:
            embedding = json.loads(row["embedding"])
        return Memory(
            id=row["id"],
            session_id=row["session_id"],
            text=row["text"],
            compressed_text=row["compressed_text"],
            importance_score=row["importance_score"],
            created_at=_from_epoch(row["created_at"]),
            last_accessed_at=_from_epoch(row["last_accessed_at"]),
            embedding=embedding,
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            is_deleted=bool(row["is_deleted"]),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            external_id=row["external_id"],
            created_at=_from_epoch(row["created_at"]),
            updated_at=_from_epoch(row["updated_at"]),
        )

    # =========================================================================
    # Session Operations
    # =========================================================================

    def upsert_session(self, session_id: str, external_id: Optional[str] = None) -> Session:
        """Create a session or touch its updated_at.

        An existing external_id is kept when none is supplied.

        Raises:
            SQLiteStoreError: If the upsert fails
        """
        now = time.time()
        try:
            self._conn.execute(
                """
                INSERT INTO sessions (id, external_id, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    external_id = COALESCE(excluded.external_id, sessions.external_id),
                    updated_at = excluded.updated_at
                """,
                (session_id, external_id, now, now),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to upsert session: {e}") from e

        session = self.get_session(session_id)
        if session is None:
            raise SQLiteStoreError(f"Session '{session_id}' missing after upsert")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by ID, or None if it does not exist."""
        try:
            cursor = self._conn.execute(
                "SELECT id, external_id, created_at, updated_at FROM sessions WHERE id = ?",
                (session_id,),
            )
            row = cursor.fetchone()
            return self._row_to_session(row) if row else None
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get session: {e}") from e

    # =========================================================================
    # Memory Operations
    # =========================================================================

    def add_memory(
        self,
        session_id: str,
        text: str,
        compressed_text: str,
        importance_score: float,
        embedding: Optional[list[float]] = None,
        metadata: Optional[dict[str, Any]] = None,
        memory_id: Optional[str] = None,
    ) -> Memory:
        """Insert a memory and, if it has an embedding, its outbox entry.

        Both rows are written in one transaction.

        Args:
            session_id: Owning session (must exist)
            text: Normalized memory text
            compressed_text: Display summary of text
            importance_score: Importance from 0.0 to 1.0
            embedding: Optional embedding vector
            metadata: Optional key/value metadata
            memory_id: Optional custom ID (auto-generated if not provided)

        Returns:
            The created Memory

        Raises:
            SQLiteStoreError: If the insert fails
            ValueError: If text is empty or importance out of range
        """
        if not text:
            raise ValueError("Text cannot be empty")
        if not 0.0 <= importance_score <= 1.0:
            raise ValueError("Importance must be between 0.0 and 1.0")

        now = time.time()
        mem_id = memory_id or self._generate_id()

        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT INTO memories (
                    id, session_id, text, compressed_text, embedding, embedding_dim,
                    importance_score, created_at, last_accessed_at, is_deleted, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    mem_id,
                    session_id,
                    text,
                    compressed_text,
                    json.dumps(embedding) if embedding else None,
                    len(embedding) if embedding else None,
                    importance_score,
                    now,
                    now,
                    json.dumps(metadata) if metadata else None,
                ),
            )

            if embedding:
                cursor.execute(
                    """
                    INSERT INTO outbox (memory_id, operation, created_at)
                    VALUES (?, 'add', ?)
                    """,
                    (mem_id, now),
                )

            self._conn.commit()

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to add memory: {e}") from e

        return Memory(
            id=mem_id,
            session_id=session_id,
            text=text,
            compressed_text=compressed_text,
            importance_score=importance_score,
            created_at=_from_epoch(now),
            last_accessed_at=_from_epoch(now),
            embedding=embedding,
            metadata=metadata,
        )

    def get_memory(self, memory_id: str, include_embedding: bool = False) -> Optional[Memory]:
        """Get a non-deleted memory by ID.

        Returns:
            Memory or None if missing or soft-deleted
        """
        columns = _MEMORY_COLUMNS + (", embedding" if include_embedding else "")
        try:
            cursor = self._conn.execute(
                f"SELECT {columns} FROM memories WHERE id = ? AND is_deleted = 0",
                (memory_id,),
            )
            row = cursor.fetchone()
            return self._row_to_memory(row) if row else None
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get memory: {e}") from e

    def get_memories(self, memory_ids: Sequence[str]) -> dict[str, Memory]:
        """Get non-deleted memories by ID, keyed by ID."""
        found: dict[str, Memory] = {}
        if not memory_ids:
            return found
        try:
            for chunk in _chunks(list(memory_ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = self._conn.execute(
                    f"SELECT {_MEMORY_COLUMNS} FROM memories "
                    f"WHERE id IN ({placeholders}) AND is_deleted = 0",
                    list(chunk),
                )
                for row in cursor.fetchall():
                    found[row["id"]] = self._row_to_memory(row)
            return found
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get memories: {e}") from e

    def list_active_by_session(self, session_id: str, limit: int = 200) -> list[Memory]:
        """List non-deleted memories of a session.

        Ordered by importance (descending), then creation time (newest first).
        """
        try:
            cursor = self._conn.execute(
                f"""
                SELECT {_MEMORY_COLUMNS} FROM memories
                WHERE session_id = ? AND is_deleted = 0
                ORDER BY importance_score DESC, created_at DESC, id
                LIMIT ?
                """,
                (session_id, limit),
            )
            return [self._row_to_memory(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to list memories: {e}") from e

    def _scan_embeddings(
        self,
        session_id: str,
        embedding: Sequence[float],
        created_after: Optional[float] = None,
    ) -> list[tuple[Memory, float]]:
        """Score every comparable memory of a session against embedding.

        Only non-deleted memories whose embedding has the same dimension are
        compared; vectors of other providers/dimensions are skipped.
        """
        query = f"""
            SELECT {_MEMORY_COLUMNS}, embedding FROM memories
            WHERE session_id = ? AND is_deleted = 0 AND embedding_dim = ?
        """
        params: list[Any] = [session_id, len(embedding)]
        if created_after is not None:
            query += " AND created_at >= ?"
            params.append(created_after)

        try:
            cursor = self._conn.execute(query, params)
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to scan embeddings: {e}") from e

        scored = []
        for row in rows:
            memory = self._row_to_memory(row)
            scored.append((memory, cosine_similarity(embedding, memory.embedding)))
        scored.sort(key=lambda item: (-item[1], item[0].id))
        return scored

    def find_similar(
        self,
        session_id: str,
        embedding: Sequence[float],
        limit: int,
        min_score: float,
    ) -> list[tuple[Memory, float]]:
        """Rank a session's memories by exact cosine similarity.

        Args:
            session_id: Session to search
            embedding: Query vector
            limit: Maximum number of results
            min_score: Minimum similarity to include

        Returns:
            (memory, similarity) pairs, most similar first
        """
        scored = self._scan_embeddings(session_id, embedding)
        return [item for item in scored if item[1] >= min_score][:limit]

    def find_duplicate(
        self,
        session_id: str,
        embedding: Sequence[float],
        created_after: datetime,
        threshold: float,
    ) -> Optional[str]:
        """Find the most similar recent memory above threshold.

        Returns:
            ID of the best match created at or after created_after whose
            similarity exceeds threshold, or None
        """
        scored = self._scan_embeddings(session_id, embedding, _to_epoch(created_after))
        if scored and scored[0][1] > threshold:
            return scored[0][0].id
        return None

    def update_last_accessed(self, memory_ids: Sequence[str], timestamp: datetime) -> int:
        """Stamp last_accessed_at for a batch of memories in one transaction.

        The stored value never moves backwards.

        Returns:
            Number of memories updated
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return 0
        stamp = _to_epoch(timestamp)
        updated = 0
        try:
            cursor = self._conn.cursor()
            for chunk in _chunks(ids):
                placeholders = ", ".join("?" for _ in chunk)
                cursor.execute(
                    f"""
                    UPDATE memories SET last_accessed_at = MAX(last_accessed_at, ?)
                    WHERE id IN ({placeholders}) AND is_deleted = 0
                    """,
                    [stamp, *chunk],
                )
                updated += cursor.rowcount
            self._conn.commit()
            return updated
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to update access time: {e}") from e

    def _soft_delete_where(self, condition: str, params: list[Any]) -> list[str]:
        """Soft-delete matching non-deleted memories; returns their IDs."""
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT id FROM memories WHERE is_deleted = 0 AND {condition}",
            params,
        )
        ids = [row["id"] for row in cursor.fetchall()]
        for chunk in _chunks(ids):
            placeholders = ", ".join("?" for _ in chunk)
            cursor.execute(
                f"UPDATE memories SET is_deleted = 1 WHERE id IN ({placeholders}) AND is_deleted = 0",
                list(chunk),
            )
        return ids

    def soft_delete(
        self,
        session_id: str,
        memory_ids: Optional[Sequence[str]] = None,
    ) -> list[str]:
        """Soft-delete all (or the listed) memories of a session.

        Returns:
            IDs of the memories that were deleted by this call

        Raises:
            SQLiteStoreError: If the delete fails
        """
        try:
            if memory_ids is None:
                deleted = self._soft_delete_where("session_id = ?", [session_id])
            else:
                deleted = []
                for chunk in _chunks(list(memory_ids)):
                    placeholders = ", ".join("?" for _ in chunk)
                    deleted.extend(
                        self._soft_delete_where(
                            f"session_id = ? AND id IN ({placeholders})",
                            [session_id, *chunk],
                        )
                    )
            self._conn.commit()
            return deleted
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to soft delete memories: {e}") from e

    def soft_delete_by_ids(self, memory_ids: Sequence[str]) -> list[str]:
        """Soft-delete memories by ID across sessions in one transaction.

        Returns:
            IDs of the memories that were deleted by this call
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        try:
            deleted: list[str] = []
            for chunk in _chunks(ids):
                placeholders = ", ".join("?" for _ in chunk)
                deleted.extend(self._soft_delete_where(f"id IN ({placeholders})", list(chunk)))
            self._conn.commit()
            return deleted
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to soft delete memories: {e}") from e

    def find_prunable(
        self,
        created_before: datetime,
        last_accessed_before: datetime,
        max_importance: float,
        take: int = 200,
    ) -> list[Memory]:
        """Select stale, unimportant memories.

        Least important first, then least recently accessed.
        """
        try:
            cursor = self._conn.execute(
                f"""
                SELECT {_MEMORY_COLUMNS} FROM memories
                WHERE is_deleted = 0
                  AND created_at < ?
                  AND last_accessed_at < ?
                  AND importance_score <= ?
                ORDER BY importance_score ASC, last_accessed_at ASC, id
                LIMIT ?
                """,
                (
                    _to_epoch(created_before),
                    _to_epoch(last_accessed_before),
                    max_importance,
                    take,
                ),
            )
            return [self._row_to_memory(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to find prunable memories: {e}") from e

    def count_active(self, session_id: str) -> int:
        """Count non-deleted memories of a session."""
        try:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM memories WHERE session_id = ? AND is_deleted = 0",
                (session_id,),
            )
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count memories: {e}") from e

    def latest_accessed(self, session_id: str) -> Optional[datetime]:
        """Most recent last_accessed_at among a session's non-deleted memories."""
        try:
            cursor = self._conn.execute(
                "SELECT MAX(last_accessed_at) FROM memories WHERE session_id = ? AND is_deleted = 0",
                (session_id,),
            )
            result = cursor.fetchone()
            if not result or result[0] is None:
                return None
            return _from_epoch(result[0])
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get latest access time: {e}") from e

    # =========================================================================
    # Outbox Operations (for vector index sync)
    # =========================================================================

    def get_pending_outbox(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get pending or failed outbox entries, oldest first."""
        try:
            cursor = self._conn.execute(
                """
                SELECT id, memory_id, operation, created_at, status
                FROM outbox
                WHERE status IN ('pending', 'failed')
                ORDER BY created_at, id
                LIMIT ?
                """,
                (limit,),
            )
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get pending outbox: {e}") from e

    def mark_outbox_for_memory(self, memory_id: str, error_message: Optional[str] = None) -> int:
        """Mark every open outbox entry of a memory processed (or failed).

        Returns:
            Number of entries updated
        """
        status = "failed" if error_message else "processed"
        try:
            cursor = self._conn.execute(
                """
                UPDATE outbox
                SET status = ?, processed_at = ?, error_message = ?
                WHERE memory_id = ? AND status IN ('pending', 'failed')
                """,
                (status, time.time(), error_message, memory_id),
            )
            self._conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to mark outbox entry: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
