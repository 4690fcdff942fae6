"""Shared fixtures for engram tests."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from engram.embedding.base import EmbeddingError
from engram.storage.chromadb import ChromaStore
from engram.storage.hybrid import HybridStore
from engram.storage.sqlite import SQLiteStore


def unique_collection_name() -> str:
    """Generate a unique collection name for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


class FakeEmbeddingProvider:
    """Deterministic embedding provider keyed by exact text.

    Unknown texts get ``default``. Setting ``fail`` makes every call raise
    EmbeddingError.
    """

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        default: Optional[list[float]] = None,
        enabled: bool = True,
        fail: bool = False,
    ):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0, 0.0]
        self.enabled = enabled
        self.fail = fail
        self.calls: list[tuple[str, bool]] = []

    def is_enabled(self) -> bool:
        return self.enabled

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        self.calls.append((text, is_query))
        if self.fail:
            raise EmbeddingError("provider down")
        return self.vectors.get(text, self.default)

    async def close(self) -> None:
        return None


def _backdate(conn, memory_id: str, created_days: float, accessed_days: float) -> None:
    now = datetime.now(timezone.utc)
    conn.execute(
        "UPDATE memories SET created_at = ?, last_accessed_at = ? WHERE id = ?",
        (
            (now - timedelta(days=created_days)).timestamp(),
            (now - timedelta(days=accessed_days)).timestamp(),
            memory_id,
        ),
    )
    conn.commit()


@pytest.fixture
def sqlite_store():
    """Create ephemeral SQLiteStore for testing."""
    store = SQLiteStore(ephemeral=True)
    yield store
    store.close()


@pytest.fixture
def hybrid_store():
    """HybridStore over ephemeral SQLite and a ChromaDB index."""
    sqlite = SQLiteStore(ephemeral=True)
    chroma = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
    store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)
    yield store
    chroma.clear()
    sqlite.close()


@pytest.fixture
def lexical_store():
    """HybridStore without a vector index (exact SQLite similarity only)."""
    sqlite = SQLiteStore(ephemeral=True)
    store = HybridStore(sqlite_store=sqlite, chroma_store=None)
    yield store
    sqlite.close()


@pytest.fixture
def fake_embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def make_embedder():
    """Factory for FakeEmbeddingProvider with custom vectors."""
    return FakeEmbeddingProvider


@pytest.fixture
def backdate():
    """Rewrite a memory's created_at/last_accessed_at to N days ago."""

    def _apply(store, memory_id: str, created_days: float, accessed_days: float) -> None:
        sqlite = store._sqlite if isinstance(store, HybridStore) else store
        _backdate(sqlite._conn, memory_id, created_days, accessed_days)

    return _apply
