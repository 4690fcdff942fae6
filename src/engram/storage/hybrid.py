"""Hybrid storage layer coordinating SQLite and ChromaDB operations.

This module provides a HybridStore that implements the engine's store port on
top of SQLite (sessions, memories, embeddings) and an optional ChromaDB
vector index, kept eventually consistent via the outbox pattern.

Key principles:
- SQLite is the source of truth, including every embedding
- ChromaDB holds vectors + session/created_at metadata for ANN search
- Outbox pattern ensures eventual consistency
- Similarity queries fall back to an exact SQLite scan whenever the index is
  missing, failing, or behind on sync
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from engram.memory.types import Memory, Session
from engram.storage.chromadb import ChromaStore, StorageError as ChromaStorageError
from engram.storage.sqlite import SQLiteStore, SQLiteStoreError, _to_epoch

logger = logging.getLogger(__name__)


class HybridStoreError(SQLiteStoreError):
    """Raised when the hybrid store cannot be assembled."""

    pass


class HybridStore:
    """Coordinated storage layer combining SQLite and ChromaDB.

    Uses the outbox pattern for eventual consistency:
    1. Memory rows (with embedding) go to SQLite first (source of truth)
    2. Outbox entry is created in same SQLite transaction
    3. ChromaDB sync is attempted immediately
    4. If ChromaDB fails, outbox entry remains for later retry

    Store errors from SQLite propagate unchanged; ChromaDB errors are logged
    and absorbed.

    Args:
        sqlite_store: SQLiteStore instance
        chroma_store: Optional ChromaStore instance (None disables the index)
        sync_on_write: If True, attempt ChromaDB sync on each write (default: True)

    Example:
        >>> store = await HybridStore.create(ephemeral=True)
        >>> await store.upsert_session("s1")
        >>> memory = await store.add_memory("s1", "text", "text", 0.5, [0.1, 0.2])
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        chroma_store: Optional[ChromaStore] = None,
        sync_on_write: bool = True,
    ):
        self._sqlite = sqlite_store
        self._chroma = chroma_store
        self._sync_on_write = sync_on_write
        self._chroma_available = chroma_store is not None

    @classmethod
    async def create(
        cls,
        sqlite_path: Optional[Path] = None,
        chroma_path: Optional[Path] = None,
        collection_name: str = "memories",
        ephemeral: bool = False,
        use_vector_index: bool = True,
        sync_on_write: bool = True,
    ) -> "HybridStore":
        """Create a HybridStore with new component instances.

        Args:
            sqlite_path: Path to SQLite database (default: ~/.engram/engram.db)
            chroma_path: Path to ChromaDB storage (default: ~/.engram/chroma_db)
            collection_name: ChromaDB collection name (default: "memories")
            ephemeral: Use in-memory storage for testing (default: False)
            use_vector_index: Attach a ChromaDB index (default: True)
            sync_on_write: Sync to ChromaDB on writes (default: True)

        Raises:
            HybridStoreError: If store initialization fails
        """
        try:
            sqlite_store = SQLiteStore(db_path=sqlite_path, ephemeral=ephemeral)
            chroma_store = None
            if use_vector_index:
                chroma_store = ChromaStore(
                    db_path=chroma_path,
                    collection_name=collection_name,
                    ephemeral=ephemeral,
                )

            return cls(
                sqlite_store=sqlite_store,
                chroma_store=chroma_store,
                sync_on_write=sync_on_write,
            )

        except (SQLiteStoreError, ChromaStorageError) as e:
            raise HybridStoreError(f"Failed to create HybridStore: {e}") from e

    async def close(self) -> None:
        """Close the SQLite connection (ChromaDB needs no explicit close)."""
        self._sqlite.close()

    async def __aenter__(self) -> "HybridStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Session Operations
    # =========================================================================

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._sqlite.get_session(session_id)

    async def upsert_session(self, session_id: str, external_id: Optional[str] = None) -> Session:
        return self._sqlite.upsert_session(session_id, external_id=external_id)

    # =========================================================================
    # Memory Operations
    # =========================================================================

    async def add_memory(
        self,
        session_id: str,
        text: str,
        compressed_text: str,
        importance_score: float,
        embedding: Optional[list[float]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Memory:
        """Add a memory to SQLite, then index its embedding in ChromaDB.

        ChromaDB failures are non-fatal: the outbox entry stays open for
        process_outbox().

        Raises:
            SQLiteStoreError: If the SQLite write fails
            ValueError: If text is empty or importance out of range
        """
        memory = self._sqlite.add_memory(
            session_id=session_id,
            text=text,
            compressed_text=compressed_text,
            importance_score=importance_score,
            embedding=embedding,
            metadata=metadata,
        )

        if embedding and self._sync_on_write and self._chroma is not None:
            self._sync_memory_to_chroma(memory)

        return memory

    def _sync_memory_to_chroma(self, memory: Memory) -> bool:
        """Index one memory's embedding and settle its outbox entries.

        Returns:
            True if sync succeeded, False otherwise
        """
        if self._chroma is None or not memory.embedding:
            return False

        try:
            self._chroma.upsert(
                memory_id=memory.id,
                embedding=memory.embedding,
                session_id=memory.session_id,
                created_at=_to_epoch(memory.created_at),
            )
            self._sqlite.mark_outbox_for_memory(memory.id)
            self._chroma_available = True
            logger.debug(f"Successfully synced memory {memory.id} to ChromaDB")
            return True

        except ChromaStorageError as e:
            logger.warning(f"ChromaDB sync failed for memory {memory.id}: {e}")
            self._chroma_available = False
            self._sqlite.mark_outbox_for_memory(memory.id, error_message=str(e))
            return False

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self._sqlite.get_memory(memory_id)

    async def list_active_by_session(self, session_id: str, limit: int) -> list[Memory]:
        return self._sqlite.list_active_by_session(session_id, limit=limit)

    def _index_usable(self) -> bool:
        """True if the vector index exists and has no unsynced vectors."""
        if self._chroma is None or not self._chroma_available:
            return False
        return not self._sqlite.get_pending_outbox(limit=1)

    async def find_similar(
        self,
        session_id: str,
        embedding: Sequence[float],
        limit: int,
        min_score: float,
    ) -> list[tuple[Memory, float]]:
        """Rank a session's memories by cosine similarity to embedding.

        Uses ChromaDB when usable, verifying hits against SQLite so deleted
        memories never surface. Falls back to an exact SQLite scan otherwise.

        Returns:
            (memory, similarity) pairs, most similar first
        """
        if self._index_usable():
            assert self._chroma is not None
            try:
                hits = self._chroma.query(
                    query_embedding=list(embedding),
                    n_results=limit,
                    where={"session_id": session_id},
                )
                memories = self._sqlite.get_memories(hits["ids"])
                results = []
                for memory_id, distance in zip(hits["ids"], hits["distances"]):
                    memory = memories.get(memory_id)
                    if memory is None:
                        continue
                    # Cosine distance is 1 - cosine similarity
                    similarity = max(-1.0, min(1.0, 1.0 - distance))
                    if similarity >= min_score:
                        results.append((memory, similarity))
                results.sort(key=lambda item: (-item[1], item[0].id))
                return results

            except ChromaStorageError as e:
                logger.warning(f"ChromaDB search failed, falling back to SQLite scan: {e}")
                self._chroma_available = False

        return self._sqlite.find_similar(session_id, embedding, limit=limit, min_score=min_score)

    async def find_duplicate(
        self,
        session_id: str,
        embedding: Sequence[float],
        created_after: datetime,
        threshold: float,
    ) -> Optional[str]:
        """Find a recent memory of the session more similar than threshold."""
        if self._index_usable():
            assert self._chroma is not None
            try:
                hits = self._chroma.query(
                    query_embedding=list(embedding),
                    n_results=1,
                    where={
                        "$and": [
                            {"session_id": session_id},
                            {"created_at": {"$gte": _to_epoch(created_after)}},
                        ]
                    },
                )
                if not hits["ids"]:
                    return None
                memory_id = hits["ids"][0]
                if 1.0 - hits["distances"][0] > threshold and self._sqlite.get_memory(memory_id):
                    return memory_id
                return None

            except ChromaStorageError as e:
                logger.warning(f"ChromaDB duplicate check failed, falling back to SQLite scan: {e}")
                self._chroma_available = False

        return self._sqlite.find_duplicate(session_id, embedding, created_after, threshold)

    async def update_last_accessed(self, memory_ids: Sequence[str], timestamp: datetime) -> int:
        return self._sqlite.update_last_accessed(memory_ids, timestamp)

    def _drop_vectors(self, memory_ids: list[str]) -> None:
        """Remove vectors of deleted memories from ChromaDB, best effort."""
        if not memory_ids or self._chroma is None:
            return
        try:
            self._chroma.delete(memory_ids)
        except ChromaStorageError as e:
            # Verification against SQLite hides these vectors from results
            logger.warning(f"Failed to delete {len(memory_ids)} vectors from ChromaDB: {e}")
            self._chroma_available = False

    async def soft_delete(self, session_id: str, memory_ids: Optional[Sequence[str]] = None) -> int:
        """Soft-delete all (or the listed) memories of a session.

        Returns:
            Number of memories deleted
        """
        deleted = self._sqlite.soft_delete(session_id, memory_ids)
        self._drop_vectors(deleted)
        return len(deleted)

    async def soft_delete_by_ids(self, memory_ids: Sequence[str]) -> int:
        deleted = self._sqlite.soft_delete_by_ids(memory_ids)
        self._drop_vectors(deleted)
        return len(deleted)

    async def find_prunable(
        self,
        created_before: datetime,
        last_accessed_before: datetime,
        max_importance: float,
        take: int,
    ) -> list[Memory]:
        return self._sqlite.find_prunable(
            created_before, last_accessed_before, max_importance, take=take
        )

    async def count_active(self, session_id: str) -> int:
        return self._sqlite.count_active(session_id)

    async def latest_accessed(self, session_id: str) -> Optional[datetime]:
        return self._sqlite.latest_accessed(session_id)

    # =========================================================================
    # Outbox Processing
    # =========================================================================

    async def process_outbox(self, batch_size: int = 10) -> int:
        """Retry pending/failed ChromaDB syncs from the outbox queue.

        Should be called periodically for eventual consistency.

        Args:
            batch_size: Number of entries to process (default: 10)

        Returns:
            Number of entries successfully processed
        """
        if self._chroma is None:
            return 0

        pending = self._sqlite.get_pending_outbox(limit=batch_size)
        processed = 0

        for entry in pending:
            memory_id = entry["memory_id"]
            memory = self._sqlite.get_memory(memory_id, include_embedding=True)
            if memory is None or not memory.embedding:
                # Memory was deleted, nothing to index
                self._sqlite.mark_outbox_for_memory(memory_id)
                processed += 1
            elif self._sync_memory_to_chroma(memory):
                processed += 1

        return processed

    def get_outbox_status(self) -> dict[str, Any]:
        """Get outbox queue status.

        Returns:
            Dict with pending count and index availability
        """
        pending = self._sqlite.get_pending_outbox(limit=1000)
        return {
            "pending": len(pending),
            "vector_index": self._chroma is not None,
            "chroma_available": self._chroma_available,
        }

    @property
    def vector_index_available(self) -> bool:
        """Check if ChromaDB is attached and reachable."""
        return self._chroma is not None and self._chroma_available
