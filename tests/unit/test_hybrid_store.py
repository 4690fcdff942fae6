"""Unit tests for HybridStore - coordinated SQLite/ChromaDB operations."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from engram.memory.types import Memory, utcnow
from engram.storage.chromadb import ChromaStore, StorageError as ChromaStorageError
from engram.storage.hybrid import HybridStore, HybridStoreError
from engram.storage.sqlite import SQLiteStore, SQLiteStoreError


def unique_collection_name() -> str:
    """Generate a unique collection name for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


def _memory(memory_id: str = "mem_1", embedding=None) -> Memory:
    now = utcnow()
    return Memory(
        id=memory_id,
        session_id="s1",
        text="Test memory",
        compressed_text="Test memory",
        importance_score=0.5,
        created_at=now,
        last_accessed_at=now,
        embedding=embedding,
    )


async def _add(store: HybridStore, text: str, embedding, session_id: str = "s1") -> Memory:
    await store.upsert_session(session_id)
    return await store.add_memory(session_id, text, text, 0.5, embedding=embedding)


class TestHybridStoreInit:
    """Tests for HybridStore initialization."""

    def test_init_with_components(self):
        """Test initialization with component stores."""
        sqlite = SQLiteStore(ephemeral=True)
        chroma = ChromaStore(ephemeral=True, collection_name=unique_collection_name())

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)

        assert store._sqlite is sqlite
        assert store._chroma is chroma
        assert store._sync_on_write is True
        assert store.vector_index_available is True
        sqlite.close()

    def test_init_without_index(self):
        sqlite = SQLiteStore(ephemeral=True)
        store = HybridStore(sqlite_store=sqlite)
        assert store.vector_index_available is False
        sqlite.close()


class TestHybridStoreCreate:
    """Tests for HybridStore.create factory method."""

    @pytest.mark.asyncio
    async def test_create_ephemeral(self):
        store = await HybridStore.create(
            ephemeral=True, collection_name=unique_collection_name()
        )
        assert isinstance(store._sqlite, SQLiteStore)
        assert isinstance(store._chroma, ChromaStore)
        await store.close()

    @pytest.mark.asyncio
    async def test_create_without_vector_index(self):
        store = await HybridStore.create(ephemeral=True, use_vector_index=False)
        assert store._chroma is None
        await store.close()

    @pytest.mark.asyncio
    async def test_create_failure_raises(self, tmp_path):
        """Test component failures surface as HybridStoreError."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(HybridStoreError, match="Failed to create HybridStore"):
            await HybridStore.create(sqlite_path=blocker / "engram.db", use_vector_index=False)


class TestAddMemory:
    """Tests for HybridStore.add_memory with mocked components."""

    @pytest.fixture
    def mock_stores(self):
        sqlite = MagicMock(spec=SQLiteStore)
        chroma = MagicMock(spec=ChromaStore)
        return sqlite, chroma

    @pytest.mark.asyncio
    async def test_add_memory_syncs_vector(self, mock_stores):
        """Test a memory with an embedding is indexed and its outbox settled."""
        sqlite, chroma = mock_stores
        memory = _memory(embedding=[0.1, 0.2])
        sqlite.add_memory.return_value = memory

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)
        result = await store.add_memory("s1", "Test memory", "Test memory", 0.5, [0.1, 0.2])

        assert result is memory
        chroma.upsert.assert_called_once()
        assert chroma.upsert.call_args.kwargs["session_id"] == "s1"
        sqlite.mark_outbox_for_memory.assert_called_once_with("mem_1")

    @pytest.mark.asyncio
    async def test_add_memory_without_embedding_skips_index(self, mock_stores):
        sqlite, chroma = mock_stores
        sqlite.add_memory.return_value = _memory()

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)
        await store.add_memory("s1", "Test memory", "Test memory", 0.5)

        chroma.upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_memory_sqlite_failure_propagates(self, mock_stores):
        """Test SQLite failures propagate unchanged."""
        sqlite, chroma = mock_stores
        sqlite.add_memory.side_effect = SQLiteStoreError("Database error")

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)
        with pytest.raises(SQLiteStoreError, match="Database error"):
            await store.add_memory("s1", "Test", "Test", 0.5, [0.1])
        chroma.upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_memory_chroma_failure_non_fatal(self, mock_stores):
        """Test that ChromaDB failure is non-fatal (operation succeeds)."""
        sqlite, chroma = mock_stores
        sqlite.add_memory.return_value = _memory(embedding=[0.1])
        chroma.upsert.side_effect = ChromaStorageError("ChromaDB error")

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma)
        result = await store.add_memory("s1", "Test", "Test", 0.5, [0.1])

        assert result.id == "mem_1"
        assert store.vector_index_available is False
        sqlite.mark_outbox_for_memory.assert_called_once_with("mem_1", error_message="ChromaDB error")

    @pytest.mark.asyncio
    async def test_add_memory_sync_disabled(self, mock_stores):
        sqlite, chroma = mock_stores
        sqlite.add_memory.return_value = _memory(embedding=[0.1])

        store = HybridStore(sqlite_store=sqlite, chroma_store=chroma, sync_on_write=False)
        await store.add_memory("s1", "Test", "Test", 0.5, [0.1])

        chroma.upsert.assert_not_called()


class TestSimilarity:
    """Tests for find_similar / find_duplicate over real ephemeral stores."""

    @pytest.mark.asyncio
    async def test_find_similar_via_index(self, hybrid_store):
        near = await _add(hybrid_store, "near", [1.0, 0.1, 0.0])
        far = await _add(hybrid_store, "far", [0.0, 1.0, 0.0])
        await _add(hybrid_store, "elsewhere", [1.0, 0.0, 0.0], session_id="other")

        results = await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], limit=10, min_score=-1.0)

        assert [m.id for m, _ in results] == [near.id, far.id]
        assert results[0][1] == pytest.approx(0.995, abs=1e-2)
        assert results[1][1] == pytest.approx(0.0, abs=1e-3)

    @pytest.mark.asyncio
    async def test_find_similar_min_score(self, hybrid_store):
        await _add(hybrid_store, "near", [1.0, 0.0, 0.0])
        await _add(hybrid_store, "far", [0.0, 1.0, 0.0])
        results = await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], limit=10, min_score=0.5)
        assert [m.text for m, _ in results] == ["near"]

    @pytest.mark.asyncio
    async def test_find_similar_index_and_scan_agree(self, hybrid_store):
        for i, vector in enumerate([[1.0, 0.0, 0.0], [0.6, 0.8, 0.0], [0.0, 0.0, 1.0]]):
            await _add(hybrid_store, f"m{i}", vector)
        query = [0.9, 0.3, 0.1]

        via_index = await hybrid_store.find_similar("s1", query, limit=10, min_score=-1.0)
        via_scan = hybrid_store._sqlite.find_similar("s1", query, limit=10, min_score=-1.0)

        assert [m.id for m, _ in via_index] == [m.id for m, _ in via_scan]
        for (_, a), (_, b) in zip(via_index, via_scan):
            assert a == pytest.approx(b, abs=1e-3)

    @pytest.mark.asyncio
    async def test_find_similar_falls_back_on_index_error(self, hybrid_store):
        """Test a failing index falls back to the exact SQLite scan."""
        memory = await _add(hybrid_store, "near", [1.0, 0.0, 0.0])
        hybrid_store._chroma = MagicMock(spec=ChromaStore)
        hybrid_store._chroma.query.side_effect = ChromaStorageError("index down")

        results = await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], limit=5, min_score=0.0)

        assert [m.id for m, _ in results] == [memory.id]
        assert hybrid_store.vector_index_available is False

    @pytest.mark.asyncio
    async def test_pending_outbox_uses_scan(self, hybrid_store):
        """Test memories not yet indexed are still found."""
        hybrid_store._sync_on_write = False
        memory = await _add(hybrid_store, "unsynced", [1.0, 0.0, 0.0])
        assert hybrid_store._chroma.count() == 0

        results = await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], limit=5, min_score=0.0)
        assert [m.id for m, _ in results] == [memory.id]

    @pytest.mark.asyncio
    async def test_find_duplicate_via_index(self, hybrid_store):
        memory = await _add(hybrid_store, "dup", [1.0, 0.0, 0.0])
        window_start = utcnow() - timedelta(hours=24)

        assert await hybrid_store.find_duplicate("s1", [1.0, 0.01, 0.0], window_start, 0.95) == memory.id
        assert await hybrid_store.find_duplicate("s1", [0.0, 1.0, 0.0], window_start, 0.95) is None
        assert await hybrid_store.find_duplicate("other", [1.0, 0.0, 0.0], window_start, 0.95) is None

    @pytest.mark.asyncio
    async def test_find_duplicate_outside_window(self, hybrid_store):
        await _add(hybrid_store, "dup", [1.0, 0.0, 0.0])
        window_start = utcnow() + timedelta(minutes=1)
        assert await hybrid_store.find_duplicate("s1", [1.0, 0.0, 0.0], window_start, 0.95) is None


class TestSoftDelete:
    """Tests for soft deletion across both stores."""

    @pytest.mark.asyncio
    async def test_soft_delete_removes_vectors(self, hybrid_store):
        first = await _add(hybrid_store, "one", [1.0, 0.0, 0.0])
        await _add(hybrid_store, "two", [0.0, 1.0, 0.0])

        assert await hybrid_store.soft_delete("s1", [first.id]) == 1
        assert hybrid_store._chroma.count() == 1
        assert await hybrid_store.count_active("s1") == 1

    @pytest.mark.asyncio
    async def test_soft_deleted_never_returned(self, hybrid_store):
        memory = await _add(hybrid_store, "gone", [1.0, 0.0, 0.0])
        await hybrid_store.soft_delete_by_ids([memory.id])

        assert await hybrid_store.get_memory(memory.id) is None
        assert await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], 10, -1.0) == []
        assert await hybrid_store.list_active_by_session("s1", 10) == []
        assert await hybrid_store.latest_accessed("s1") is None
        window_start = utcnow() - timedelta(hours=1)
        assert await hybrid_store.find_duplicate("s1", [1.0, 0.0, 0.0], window_start, 0.5) is None

    @pytest.mark.asyncio
    async def test_stale_vector_is_filtered(self, hybrid_store):
        """Test a vector left behind by a failed index delete is hidden."""
        memory = await _add(hybrid_store, "gone", [1.0, 0.0, 0.0])
        hybrid_store._sqlite.soft_delete_by_ids([memory.id])
        assert hybrid_store._chroma.count() == 1

        assert await hybrid_store.find_similar("s1", [1.0, 0.0, 0.0], 10, -1.0) == []

    @pytest.mark.asyncio
    async def test_index_delete_failure_non_fatal(self, hybrid_store):
        memory = await _add(hybrid_store, "gone", [1.0, 0.0, 0.0])
        hybrid_store._chroma = MagicMock(spec=ChromaStore)
        hybrid_store._chroma.delete.side_effect = ChromaStorageError("index down")

        assert await hybrid_store.soft_delete_by_ids([memory.id]) == 1


class TestOutboxProcessing:
    """Tests for outbox retries."""

    @pytest.mark.asyncio
    async def test_process_outbox_indexes_pending(self, hybrid_store):
        hybrid_store._sync_on_write = False
        await _add(hybrid_store, "one", [1.0, 0.0, 0.0])
        await _add(hybrid_store, "two", [0.0, 1.0, 0.0])
        assert hybrid_store.get_outbox_status()["pending"] == 2

        assert await hybrid_store.process_outbox() == 2
        assert hybrid_store._chroma.count() == 2
        assert hybrid_store.get_outbox_status()["pending"] == 0

    @pytest.mark.asyncio
    async def test_process_outbox_deleted_memory(self, hybrid_store):
        hybrid_store._sync_on_write = False
        memory = await _add(hybrid_store, "gone", [1.0, 0.0, 0.0])
        await hybrid_store.soft_delete_by_ids([memory.id])

        assert await hybrid_store.process_outbox() == 1
        assert hybrid_store._chroma.count() == 0
        assert hybrid_store.get_outbox_status()["pending"] == 0

    @pytest.mark.asyncio
    async def test_process_outbox_without_index(self, lexical_store):
        await _add(lexical_store, "one", [1.0, 0.0])
        assert await lexical_store.process_outbox() == 0
        assert lexical_store.get_outbox_status()["vector_index"] is False


class TestContextManager:
    @pytest.mark.asyncio
    async def test_context_manager_closes_sqlite(self):
        sqlite = MagicMock(spec=SQLiteStore)
        async with HybridStore(sqlite_store=sqlite):
            pass
        sqlite.close.assert_called_once()
