"""ChromaDB vector index for memory embeddings.

This module wraps a ChromaDB collection used as an approximate nearest
neighbour index over memory embeddings:
- Persistent storage (production) via PersistentClient
- Ephemeral storage (testing) via EphemeralClient
- Cosine distance metric, so similarity = 1 - distance
- Per-session filtering through ``session_id`` / ``created_at`` metadata

The index holds vectors and filter metadata only. Memory text and state live
in SQLite.
"""

from pathlib import Path
from typing import Any, Optional

import chromadb  # type: ignore[import-not-found]
from chromadb.api.models.Collection import Collection  # type: ignore[import-not-found]

from engram.errors import StoreUnavailable


class StorageError(StoreUnavailable):
    """Custom exception for vector index errors."""

    pass


class ChromaStore:
    """Vector index over memory embeddings using ChromaDB.

    Args:
        db_path: Path to ChromaDB persistent storage directory.
                 Defaults to ~/.engram/chroma_db
        collection_name: Name of the collection (default: "memories")
        ephemeral: If True, use in-memory storage for testing (default: False)

    Attributes:
        db_path: Path to database storage (None if ephemeral)
        collection_name: Name of the active collection
        ephemeral: Whether using ephemeral storage
        _client: ChromaDB client instance
        _collection: ChromaDB collection instance
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        collection_name: str = "memories",
        ephemeral: bool = False,
    ):
        """Initialize ChromaStore with persistent or ephemeral storage.

        Raises:
            StorageError: If database initialization fails
        """
        self.collection_name = collection_name
        self.ephemeral = ephemeral

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".engram" / "chroma_db"

        try:
            if ephemeral:
                self._client = chromadb.EphemeralClient()
            else:
                if self.db_path is not None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.db_path))

            self._collection = self._get_or_create_collection()

        except Exception as e:
            raise StorageError(f"Failed to initialize ChromaDB storage: {e}") from e

    def _get_or_create_collection(self) -> Collection:
        """Get existing collection or create new one with cosine distance.

        Raises:
            StorageError: If collection operations fail
        """
        try:
            return self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as e:
            raise StorageError(f"Failed to get or create collection: {e}") from e

    def upsert(
        self,
        memory_id: str,
        embedding: list[float],
        session_id: str,
        created_at: float,
    ) -> None:
        """Insert or replace the vector of one memory.

        Args:
            memory_id: Memory ID (same as in SQLite)
            embedding: Embedding vector
            session_id: Owning session, stored for filtering
            created_at: Creation time (epoch seconds), stored for filtering

        Raises:
            StorageError: If the upsert fails
        """
        try:
            self._collection.upsert(
                ids=[memory_id],
                embeddings=[embedding],  # type: ignore[arg-type]
                metadatas=[{"session_id": session_id, "created_at": created_at}],
            )
        except Exception as e:
            raise StorageError(f"Failed to upsert embedding: {e}") from e

    def query(
        self,
        query_embedding: list[float],
        n_results: int = 5,
        where: Optional[dict] = None,
    ) -> dict:
        """Nearest-neighbour search with optional metadata filtering.

        Args:
            query_embedding: Query vector to search for
            n_results: Number of results to return (default: 5)
            where: Optional metadata filter dict
                   (e.g., {"session_id": "s1"})

        Returns:
            Dictionary with:
                - ids: List of memory IDs
                - distances: List of cosine distances (lower is closer)

        Raises:
            StorageError: If search operation fails
        """
        if n_results <= 0:
            return {"ids": [], "distances": []}

        try:
            count = self._collection.count()
            if count == 0:
                return {"ids": [], "distances": []}

            query_kwargs: dict[str, Any] = {
                "query_embeddings": [query_embedding],
                "n_results": min(n_results, count),
                "include": ["distances"],
            }
            if where is not None:
                query_kwargs["where"] = where

            results = self._collection.query(**query_kwargs)

            # ChromaDB returns results wrapped in lists (for batch queries)
            return {
                "ids": results["ids"][0] if results["ids"] else [],
                "distances": results["distances"][0] if results["distances"] else [],
            }

        except Exception as e:
            raise StorageError(f"Failed to search embeddings: {e}") from e

    def delete(self, ids: list[str]) -> None:
        """Delete vectors by memory IDs.

        Raises:
            StorageError: If delete operation fails
        """
        if not ids:
            return

        try:
            self._collection.delete(ids=ids)
        except Exception as e:
            raise StorageError(f"Failed to delete embeddings: {e}") from e

    def count(self) -> int:
        """Get total number of vectors in collection.

        Raises:
            StorageError: If count operation fails
        """
        try:
            return self._collection.count()
        except Exception as e:
            raise StorageError(f"Failed to count embeddings: {e}") from e

    def clear(self) -> int:
        """Delete all vectors by dropping and recreating the collection.

        Returns:
            Number of vectors deleted

        Raises:
            StorageError: If clear operation fails
        """
        try:
            current_count = self._collection.count()
            if current_count == 0:
                return 0

            self._client.delete_collection(self.collection_name)
            self._collection = self._get_or_create_collection()
            return current_count

        except Exception as e:
            raise StorageError(f"Failed to clear collection: {e}") from e
