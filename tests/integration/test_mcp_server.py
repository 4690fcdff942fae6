"""Integration tests for the engram MCP server.

These tests verify that the MCP server exposes the memory operations as tools
and that the tools function correctly end-to-end over real ephemeral stores.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from engram.__main__ import (
    TOOL_HANDLERS,
    call_tool_directly,
    memory_clear_tool,
    memory_prune_tool,
    memory_retrieve_tool,
    memory_store_tool,
    memory_sync_tool,
    parse_arguments,
    session_summary_tool,
    settings_from_args,
)
from engram.errors import StoreUnavailable
from engram.memory.types import EngineConfig


class TestMCPToolHandlers:
    """Tests for individual MCP tool handlers."""

    @pytest.mark.asyncio
    async def test_memory_store_tool_success(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            result = await memory_store_tool(
                session_id="s1",
                text="User prefers dark mode",
                metadata={"topic": "ui"},
                importance_hint="high",
            )

        assert result["success"] is True
        memory = result["memory"]
        assert memory["id"].startswith("mem_")
        assert memory["session_id"] == "s1"
        assert memory["deduplicated"] is False
        assert 0.0 <= memory["importance_score"] <= 1.0

    @pytest.mark.asyncio
    async def test_memory_store_tool_validation_error(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            result = await memory_store_tool(session_id="s1", text="   ")

        assert result["success"] is False
        assert result["error"]["code"] == "VALIDATION_ERROR"
        assert result["error"]["details"] == {"field": "text"}

    @pytest.mark.asyncio
    async def test_tool_not_initialized(self):
        with patch("engram.__main__.hybrid_store", None):
            result = await memory_store_tool(session_id="s1", text="hello")

        assert result["success"] is False
        assert result["error"]["code"] == "NOT_INITIALIZED"

    @pytest.mark.asyncio
    async def test_memory_retrieve_tool(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            await memory_store_tool(session_id="s1", text="User prefers dark mode")
            await memory_store_tool(session_id="s1", text="User lives in Oslo")
            result = await memory_retrieve_tool(session_id="s1", query="dark mode")

        assert result["success"] is True
        assert result["session_id"] == "s1"
        assert result["low_confidence"] is False
        assert [item["text"] for item in result["results"]] == ["User prefers dark mode"]
        assert result["token_usage"] == 6

    @pytest.mark.asyncio
    async def test_memory_retrieve_tool_with_embeddings(self, hybrid_store, make_embedder):
        embedder = make_embedder(
            vectors={
                "User prefers dark mode": [1.0, 0.0, 0.0],
                "User lives in Oslo": [0.0, 1.0, 0.0],
                "which theme": [0.95, 0.05, 0.0],
            }
        )
        with patch("engram.__main__.hybrid_store", hybrid_store), patch(
            "engram.__main__.embedding_provider", embedder
        ):
            await memory_store_tool(session_id="s1", text="User prefers dark mode")
            await memory_store_tool(session_id="s1", text="User lives in Oslo")
            result = await memory_retrieve_tool(session_id="s1", query="which theme")

        assert result["success"] is True
        assert [item["text"] for item in result["results"]] == ["User prefers dark mode"]

    @pytest.mark.asyncio
    async def test_memory_retrieve_tool_unknown_session(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            result = await memory_retrieve_tool(session_id="ghost", query="anything")

        assert result["success"] is False
        assert result["error"]["code"] == "SESSION_NOT_FOUND"
        assert result["error"]["details"] == {"session_id": "ghost"}

    @pytest.mark.asyncio
    async def test_memory_retrieve_tool_required_embeddings(self, hybrid_store):
        config = EngineConfig(require_embeddings=True)
        with patch("engram.__main__.hybrid_store", hybrid_store), patch(
            "engram.__main__.engine_config", config
        ):
            await hybrid_store.upsert_session("s1")
            result = await memory_retrieve_tool(session_id="s1", query="anything")

        assert result["success"] is False
        assert result["error"]["code"] == "EMBEDDING_PROVIDER_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_memory_clear_tool(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            stored = await memory_store_tool(session_id="s1", text="first")
            await memory_store_tool(session_id="s1", text="second")

            partial = await memory_clear_tool(
                session_id="s1", memory_ids=[stored["memory"]["id"]]
            )
            rest = await memory_clear_tool(session_id="s1")

        assert partial == {"success": True, "session_id": "s1", "cleared": 1}
        assert rest["cleared"] == 1

    @pytest.mark.asyncio
    async def test_session_summary_tool(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            await memory_store_tool(session_id="s1", text="first", external_id="user-1")
            result = await session_summary_tool(session_id="s1")
            missing = await session_summary_tool(session_id="ghost")

        assert result["success"] is True
        assert result["session"]["memory_count"] == 1
        assert result["session"]["external_id"] == "user-1"
        assert result["session"]["last_accessed_at"] is not None
        assert missing["error"]["code"] == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_memory_prune_tool(self, hybrid_store, backdate):
        await hybrid_store.upsert_session("s1")
        memory = await hybrid_store.add_memory("s1", "old", "old", 0.1)
        backdate(hybrid_store, memory.id, created_days=95, accessed_days=60)

        with patch("engram.__main__.hybrid_store", hybrid_store):
            result = await memory_prune_tool()
            invalid = await memory_prune_tool(take=5000)

        assert result == {
            "success": True,
            "candidates": 1,
            "pruned": 1,
            "pruned_ids": [memory.id],
        }
        assert invalid["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_memory_sync_tool(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            result = await memory_sync_tool()

        assert result["success"] is True
        assert result["processed"] == 0
        assert result["status"]["pending"] == 0

    @pytest.mark.asyncio
    async def test_store_failure_reported(self):
        broken = AsyncMock()
        broken.get_session.side_effect = StoreUnavailable("disk full")

        with patch("engram.__main__.hybrid_store", broken):
            result = await session_summary_tool(session_id="s1")

        assert result["success"] is False
        assert result["error"]["code"] == "STORE_UNAVAILABLE"
        assert result["error"]["message"] == "disk full"

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self):
        broken = AsyncMock()
        broken.get_session.side_effect = RuntimeError("boom")

        with patch("engram.__main__.hybrid_store", broken):
            result = await session_summary_tool(session_id="s1")

        assert result["success"] is False
        assert result["error"]["code"] == "INTERNAL_ERROR"


class TestMCPServerIntegration:
    """End-to-end workflows through the tool handlers."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, hybrid_store, make_embedder):
        """Test store, dedupe, retrieve, summarize, then clear."""
        embedder = make_embedder()

        with patch("engram.__main__.hybrid_store", hybrid_store), patch(
            "engram.__main__.embedding_provider", embedder
        ):
            first = await memory_store_tool(session_id="s1", text="User bought a Tesla")
            second = await memory_store_tool(session_id="s1", text="User bought a Tesla.")
            retrieved = await memory_retrieve_tool(session_id="s1", query="car")
            summary = await session_summary_tool(session_id="s1")
            cleared = await memory_clear_tool(session_id="s1")
            after = await memory_retrieve_tool(session_id="s1", query="car")

        assert second["memory"]["deduplicated"] is True
        assert second["memory"]["id"] == first["memory"]["id"]
        assert [item["id"] for item in retrieved["results"]] == [first["memory"]["id"]]
        assert summary["session"]["memory_count"] == 1
        assert cleared["cleared"] == 1
        assert after["results"] == []

    @pytest.mark.asyncio
    async def test_sessions_isolated(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", hybrid_store):
            await memory_store_tool(session_id="alice", text="likes tea")
            await memory_store_tool(session_id="bob", text="likes tea too")
            result = await memory_retrieve_tool(session_id="alice", query="tea")

        assert [item["text"] for item in result["results"]] == ["likes tea"]


class TestDirectCall:
    """Tests for call_tool_directly."""

    @pytest.mark.asyncio
    async def test_direct_store_and_retrieve(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", None):
            stored = await call_tool_directly(
                "memory_store",
                json.dumps({"session_id": "s1", "text": "User prefers dark mode"}),
                hybrid_store,
            )
            retrieved = await call_tool_directly(
                "memory_retrieve",
                json.dumps({"session_id": "s1", "query": "dark mode"}),
                hybrid_store,
            )

        assert stored["success"] is True
        assert retrieved["results"][0]["id"] == stored["memory"]["id"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", None):
            result = await call_tool_directly("memory_explode", "{}", hybrid_store)

        assert result["error"]["code"] == "UNKNOWN_TOOL"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args_json", ["{not json", "[1, 2]"])
    async def test_bad_arguments_json(self, hybrid_store, args_json):
        with patch("engram.__main__.hybrid_store", None):
            result = await call_tool_directly("memory_store", args_json, hybrid_store)

        assert result["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_keyword(self, hybrid_store):
        with patch("engram.__main__.hybrid_store", None):
            result = await call_tool_directly(
                "session_summary", json.dumps({"session": "s1"}), hybrid_store
            )

        assert result["error"]["code"] == "VALIDATION_ERROR"

    def test_all_tools_registered(self):
        assert set(TOOL_HANDLERS) == {
            "memory_store",
            "memory_retrieve",
            "memory_clear",
            "session_summary",
            "memory_prune",
            "memory_sync",
        }


class TestArguments:
    """Tests for CLI argument parsing."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENGRAM_EMBEDDINGS_ENABLED", raising=False)
        args = parse_arguments([])

        assert args.call is None
        assert args.args == "{}"
        assert args.collection == "memories"
        assert args.vector_index is True
        assert args.embeddings is False
        assert args.embedding_provider == "ollama"

    def test_overrides(self, tmp_path):
        args = parse_arguments(
            [
                "--sqlite-path",
                str(tmp_path / "engram.db"),
                "--no-vector-index",
                "--embeddings",
                "--embedding-provider",
                "openai",
                "--log-level",
                "DEBUG",
            ]
        )
        settings = settings_from_args(args)

        assert settings.get_sqlite_path() == (tmp_path / "engram.db").resolve()
        assert settings.use_vector_index is False
        assert settings.embeddings_enabled is True
        assert settings.embedding_provider == "openai"
        assert settings.log_level == "DEBUG"

    def test_invalid_provider_rejected(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--embedding-provider", "cohere"])
