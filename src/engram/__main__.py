"""MCP server entry point for the engram memory engine.

This module provides the main entry point for the MCP server with:
- CLI argument parsing for flexible configuration
- Pydantic Settings for environment variable support
- Component initialization in dependency order
- Tool registration for the store/retrieve/clear/summary/prune operations
- Signal handling for graceful shutdown
- Logging to stderr (stdout carries the MCP stdio protocol)

Usage:
    python -m engram [options]

    Options:
        --sqlite-path PATH          SQLite database path
        --chroma-path PATH          ChromaDB storage path
        --collection NAME           Collection name (default: memories)
        --no-vector-index           Use exact SQLite similarity only
        --embeddings/--no-embeddings  Enable embedding generation
        --embedding-provider NAME   ollama or openai (default: ollama)
        --ollama-host HOST          Ollama server host (default: http://localhost:11434)
        --ollama-model MODEL        Embedding model name (default: mxbai-embed-large)
        --log-level LEVEL           Logging level (default: INFO)
        --call TOOL --args JSON     Invoke one tool directly and print the result
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from engram.config import EngramSettings
from engram.embedding import DisabledEmbeddingProvider, EmbeddingProvider, create_embedding_provider
from engram.errors import EngramError
from engram.memory.operations import memory_clear, memory_store, session_summary
from engram.memory.pruning import memory_prune
from engram.memory.retrieval import memory_retrieve
from engram.memory.types import EngineConfig
from engram.storage.hybrid import HybridStore

# Initialize FastMCP server
mcp = FastMCP("engram")

# Global components (initialized in main)
hybrid_store: Optional[HybridStore] = None
embedding_provider: EmbeddingProvider = DisabledEmbeddingProvider()
engine_config: EngineConfig = EngineConfig()

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr (never stdout for MCP servers).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments with configuration defaults.

    Configuration precedence:
        1. CLI arguments (highest priority)
        2. Environment variables (ENGRAM_ prefix)
        3. Defaults (lowest priority)
    """
    settings = EngramSettings()

    parser = argparse.ArgumentParser(
        description="engram MCP server for session memory retrieval",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Direct tool invocation mode
    parser.add_argument(
        "--call",
        type=str,
        metavar="TOOL_NAME",
        help="Directly invoke a tool by name (memory_store, memory_retrieve, memory_clear, "
        "session_summary, memory_prune, memory_sync)",
    )
    parser.add_argument(
        "--args",
        type=str,
        default="{}",
        help="JSON arguments for the tool (used with --call)",
    )

    # Storage configuration
    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=str(settings.sqlite_path) if settings.sqlite_path else None,
        help="SQLite database path (default: ~/.engram/engram.db)",
    )
    parser.add_argument(
        "--chroma-path",
        type=str,
        default=str(settings.chroma_path) if settings.chroma_path else None,
        help="ChromaDB storage path (default: ~/.engram/chroma_db)",
    )
    parser.add_argument(
        "--collection",
        type=str,
        default=settings.collection_name,
        help="ChromaDB collection name",
    )
    parser.add_argument(
        "--vector-index",
        action=argparse.BooleanOptionalAction,
        default=settings.use_vector_index,
        help="Index embeddings in ChromaDB",
    )

    # Embedding configuration
    parser.add_argument(
        "--embeddings",
        action=argparse.BooleanOptionalAction,
        default=settings.embeddings_enabled,
        help="Generate embeddings for memories and queries",
    )
    parser.add_argument(
        "--embedding-provider",
        type=str,
        default=settings.embedding_provider,
        choices=["ollama", "openai"],
        help="Embedding backend",
    )
    parser.add_argument(
        "--ollama-host",
        type=str,
        default=settings.ollama_host,
        help="Ollama server host URL",
    )
    parser.add_argument(
        "--ollama-model",
        type=str,
        default=settings.ollama_model,
        help="Ollama embedding model name",
    )
    parser.add_argument(
        "--embedding-timeout",
        type=float,
        default=settings.embedding_timeout,
        help="Embedding request timeout in seconds",
    )

    # Logging configuration
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> EngramSettings:
    """Overlay parsed CLI arguments on the environment settings."""
    return EngramSettings(
        sqlite_path=Path(args.sqlite_path) if args.sqlite_path else None,
        chroma_path=Path(args.chroma_path) if args.chroma_path else None,
        collection_name=args.collection,
        use_vector_index=args.vector_index,
        embeddings_enabled=args.embeddings,
        embedding_provider=args.embedding_provider,
        ollama_host=args.ollama_host,
        ollama_model=args.ollama_model,
        embedding_timeout=args.embedding_timeout,
        log_level=args.log_level,
    )


async def initialize_components(
    settings: EngramSettings,
) -> tuple[HybridStore, EmbeddingProvider, EngineConfig]:
    """Initialize store, embedding provider and engine config.

    Raises:
        HybridStoreError: If store initialization fails
        ValueError: If the embedding provider is unknown
    """
    logger.info("Initializing components...")

    sqlite_path = settings.get_sqlite_path()
    chroma_path = settings.get_chroma_path()

    logger.info(
        f"Configuration: "
        f"sqlite_path={sqlite_path}, "
        f"chroma_path={chroma_path}, "
        f"collection={settings.collection_name}, "
        f"vector_index={settings.use_vector_index}, "
        f"embeddings={settings.embeddings_enabled} ({settings.embedding_provider})"
    )

    store = await HybridStore.create(
        sqlite_path=sqlite_path,
        chroma_path=chroma_path,
        collection_name=settings.collection_name,
        use_vector_index=settings.use_vector_index,
        ephemeral=False,
        sync_on_write=True,
    )
    provider = create_embedding_provider(settings)
    config = settings.engine_config()

    logger.info("Components initialized successfully")
    return store, provider, config


def _failure(code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message, "details": {}}}


def _error_response(error: EngramError) -> dict[str, Any]:
    return {"success": False, "error": error.to_dict()}


def _unexpected_error(tool: str, error: Exception) -> dict[str, Any]:
    logger.error(f"{tool} failed: {error}", exc_info=True)
    return _failure("INTERNAL_ERROR", str(error))


def _not_initialized() -> dict[str, Any]:
    return _failure("NOT_INITIALIZED", "Server not initialized")


# =============================================================================
# MCP Tool Handlers
# =============================================================================


@mcp.tool()
async def memory_store_tool(
    session_id: str,
    text: str,
    metadata: Optional[dict[str, Any]] = None,
    importance_hint: Optional[str] = None,
    external_id: Optional[str] = None,
) -> dict[str, Any]:
    """Store a memory for a session.

    Near-identical memories written to the same session within the duplicate
    window are merged into the existing one instead of inserted.

    Args:
        session_id: Session owning the memory (created on first write)
        text: Memory text
        metadata: Optional key/value map usable as a retrieval filter
        importance_hint: Optional "low", "medium" or "high"
        external_id: Optional external identifier for the session

    Returns:
        Result dictionary with:
        - success: Boolean indicating operation success
        - memory: id, session_id, importance_score, created_at, deduplicated
        - error: {code, message, details} (if failed)
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        result = await memory_store(
            hybrid_store,
            embedding_provider,
            session_id=session_id,
            text=text,
            metadata=metadata,
            importance_hint=importance_hint,
            external_id=external_id,
            config=engine_config,
        )
        return {"success": True, "memory": result.to_dict()}

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("memory_store_tool", e)


@mcp.tool()
async def memory_retrieve_tool(
    session_id: str,
    query: str,
    limit: Optional[int] = None,
    min_score: Optional[float] = None,
    max_tokens: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Retrieve the memories of a session most relevant to a query.

    Results are ranked by a hybrid of similarity, recency and importance and
    packed into a token budget. When nothing clears the similarity floor the
    single best memory is returned with ``low_confidence: true``.

    Args:
        session_id: Session to search
        query: Query text
        limit: Maximum number of results (default: 5, max: 50)
        min_score: Similarity floor (default: configured minimum)
        max_tokens: Token budget for returned texts (default: 1000)
        metadata: Optional equality filter on memory metadata

    Returns:
        Result dictionary with:
        - success: Boolean indicating operation success
        - session_id, query, token_usage, low_confidence
        - results: List of memories with similarity, score and timestamps
        - error: {code, message, details} (if failed)
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        result = await memory_retrieve(
            hybrid_store,
            embedding_provider,
            session_id=session_id,
            query=query,
            limit=limit,
            min_score=min_score,
            max_tokens=max_tokens,
            metadata=metadata,
            config=engine_config,
        )
        return {"success": True, **result.to_dict()}

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("memory_retrieve_tool", e)


@mcp.tool()
async def memory_clear_tool(
    session_id: str,
    memory_ids: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Soft-delete all memories of a session, or only the given IDs.

    Args:
        session_id: Session to clear
        memory_ids: Optional subset of memory IDs to delete

    Returns:
        Result dictionary with success and the number of memories cleared
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        result = await memory_clear(hybrid_store, session_id, memory_ids)
        return {"success": True, "session_id": result.session_id, "cleared": result.cleared}

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("memory_clear_tool", e)


@mcp.tool()
async def session_summary_tool(session_id: str) -> dict[str, Any]:
    """Summarize a session: active memory count and latest access time.

    Args:
        session_id: Session to summarize

    Returns:
        Result dictionary with success and the session summary
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        summary = await session_summary(hybrid_store, session_id)
        return {"success": True, "session": summary.to_dict()}

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("session_summary_tool", e)


@mcp.tool()
async def memory_prune_tool(
    max_age_days: Optional[float] = None,
    inactive_days: Optional[float] = None,
    importance_threshold: Optional[float] = None,
    take: Optional[int] = None,
) -> dict[str, Any]:
    """Soft-delete one batch of stale, unimportant memories across sessions.

    Memories qualify when created before max_age_days, not accessed for
    inactive_days, and at or below importance_threshold.

    Args:
        max_age_days: Minimum age in days (default: 90)
        inactive_days: Minimum inactivity in days (default: 30)
        importance_threshold: Maximum importance (default: 0.3)
        take: Batch size, at most 1000 (default: 500)

    Returns:
        Result dictionary with success, candidates and pruned counts
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        result = await memory_prune(
            hybrid_store,
            config=engine_config,
            max_age_days=max_age_days,
            inactive_days=inactive_days,
            importance_threshold=importance_threshold,
            take=take,
        )
        return {
            "success": True,
            "candidates": result.candidates,
            "pruned": result.pruned,
            "pruned_ids": result.pruned_ids,
        }

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("memory_prune_tool", e)


@mcp.tool()
async def memory_sync_tool(batch_size: int = 100) -> dict[str, Any]:
    """Retry pending vector index syncs and report outbox status.

    Args:
        batch_size: Maximum outbox entries to process (default: 100)

    Returns:
        Result dictionary with success, processed count and outbox status
    """
    if hybrid_store is None:
        return _not_initialized()

    try:
        processed = await hybrid_store.process_outbox(batch_size=batch_size)
        return {
            "success": True,
            "processed": processed,
            "status": hybrid_store.get_outbox_status(),
        }

    except EngramError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_error("memory_sync_tool", e)


# =============================================================================
# Direct Tool Invocation
# =============================================================================

TOOL_HANDLERS = {
    "memory_store": memory_store_tool,
    "memory_retrieve": memory_retrieve_tool,
    "memory_clear": memory_clear_tool,
    "session_summary": session_summary_tool,
    "memory_prune": memory_prune_tool,
    "memory_sync": memory_sync_tool,
}


async def call_tool_directly(
    tool_name: str,
    args_json: str,
    store: HybridStore,
    provider: Optional[EmbeddingProvider] = None,
    config: Optional[EngineConfig] = None,
) -> dict[str, Any]:
    """Directly invoke a tool without MCP protocol overhead.

    Args:
        tool_name: Name of the tool to call (memory_store, memory_retrieve, etc.)
        args_json: JSON string of arguments for the tool
        store: Initialized HybridStore
        provider: Embedding provider (default: disabled)
        config: Engine configuration (default: built-in defaults)

    Returns:
        Tool result as dictionary
    """
    global hybrid_store, embedding_provider, engine_config
    hybrid_store = store
    embedding_provider = provider or DisabledEmbeddingProvider()
    engine_config = config or EngineConfig()

    try:
        tool_args = json.loads(args_json)
    except json.JSONDecodeError as e:
        return _failure("VALIDATION_ERROR", f"Invalid JSON arguments: {e}")

    if not isinstance(tool_args, dict):
        return _failure("VALIDATION_ERROR", "Tool arguments must be a JSON object")

    handler = TOOL_HANDLERS.get(tool_name)
    if not handler:
        return _failure(
            "UNKNOWN_TOOL",
            f"Unknown tool: {tool_name}. Available: {list(TOOL_HANDLERS.keys())}",
        )

    try:
        return await handler(**tool_args)
    except TypeError as e:
        return _failure("VALIDATION_ERROR", f"Invalid arguments for {tool_name}: {e}")


def run_direct_call(args: argparse.Namespace) -> None:
    """Run a direct tool call and print result to stdout."""
    setup_logging("WARNING")

    async def _run():
        store, provider, config = await initialize_components(settings_from_args(args))
        try:
            result = await call_tool_directly(args.call, args.args, store, provider, config)
            print(json.dumps(result))
        finally:
            await provider.close()
            await store.close()

    asyncio.run(_run())


# =============================================================================
# Signal Handling
# =============================================================================


def handle_shutdown(signum: int, frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for MCP server.

    Workflow:
    1. Parse CLI arguments
    2. If --call provided, run direct tool invocation and exit
    3. Setup logging
    4. Initialize components
    5. Register signal handlers
    6. Run MCP server with stdio transport
    """
    global hybrid_store, embedding_provider, engine_config

    args = parse_arguments()

    if args.call:
        run_direct_call(args)
        return

    setup_logging(args.log_level)

    logger.info("Starting engram MCP server...")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        hybrid_store, embedding_provider, engine_config = loop.run_until_complete(
            initialize_components(settings_from_args(args))
        )

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        logger.info("MCP server ready, starting stdio transport...")

        # Blocks until the server shuts down
        mcp.run(transport="stdio")

    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if hybrid_store is not None:
            try:
                loop.run_until_complete(embedding_provider.close())
                loop.run_until_complete(hybrid_store.close())
            except Exception as e:
                logger.warning(f"Cleanup failed: {e}")
        loop.close()


if __name__ == "__main__":
    main()
