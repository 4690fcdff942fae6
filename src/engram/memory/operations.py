"""Memory operations for the write path and session bookkeeping.

This module provides the high-level store workflow (normalization, importance
estimation, embedding, duplicate guard, insert) plus clearing and
summarizing a session. Retrieval lives in ``engram.memory.retrieval`` and
pruning in ``engram.memory.pruning``.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from engram.embedding.base import EmbeddingError, EmbeddingProvider
from engram.errors import EmbeddingProviderUnavailable, SessionNotFound, ValidationError
from engram.memory.text import (
    compress_text,
    estimate_importance,
    importance_hint_prior,
    normalize_text,
    truncate_text,
)
from engram.memory.types import (
    ClearResult,
    EngineConfig,
    ImportanceHint,
    SessionSummary,
    StoreResult,
    utcnow,
)

if TYPE_CHECKING:
    from engram.storage.base import MemoryStore

logger = logging.getLogger(__name__)


def _require_session_id(session_id: str) -> str:
    if not session_id or not session_id.strip():
        raise ValidationError("session_id cannot be empty", field="session_id")
    return session_id.strip()


async def embed_or_degrade(
    embedder: EmbeddingProvider,
    text: str,
    is_query: bool,
    config: EngineConfig,
) -> Optional[list[float]]:
    """Embed text, or return None when embeddings are unavailable.

    A disabled or failing provider degrades to None unless the config
    requires embeddings.

    Raises:
        EmbeddingProviderUnavailable: If embeddings are required but cannot
            be produced
    """
    if not embedder.is_enabled():
        if config.require_embeddings:
            raise EmbeddingProviderUnavailable("Embedding provider is disabled")
        return None

    try:
        return await embedder.embed(text, is_query=is_query)
    except EmbeddingError as e:
        if config.require_embeddings:
            raise EmbeddingProviderUnavailable(f"Embedding provider failed: {e}") from e
        logger.warning(f"Embedding failed, continuing without vector: {e}")
        return None


async def find_recent_duplicate(
    store: "MemoryStore",
    session_id: str,
    embedding: Sequence[float],
    config: EngineConfig = EngineConfig(),
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Look up a near-identical memory written to the session recently.

    Only memories created within ``duplicate_window_hours`` whose similarity
    strictly exceeds ``duplicate_threshold`` qualify.

    Returns:
        ID of the duplicate, or None
    """
    if not embedding:
        return None
    now = now or utcnow()
    created_after = now - timedelta(hours=config.duplicate_window_hours)
    return await store.find_duplicate(
        session_id,
        embedding,
        created_after=created_after,
        threshold=config.duplicate_threshold,
    )


async def memory_store(
    store: "MemoryStore",
    embedder: EmbeddingProvider,
    session_id: str,
    text: str,
    metadata: Optional[dict[str, Any]] = None,
    importance_hint: Optional[Union[ImportanceHint, str]] = None,
    external_id: Optional[str] = None,
    config: EngineConfig = EngineConfig(),
) -> StoreResult:
    """Store a memory for a session, merging near-duplicates.

    Handles the complete write path:
    1. Truncate, normalize and compress the text
    2. Estimate importance from lexical signals and the optional hint
    3. Upsert the owning session
    4. Embed the text (degrading to no vector unless embeddings are required)
    5. If a recent near-duplicate exists, touch it instead of inserting
    6. Otherwise insert the memory (record and vector atomically)

    Args:
        store: Store port implementation
        embedder: Embedding provider
        session_id: Owning session (created if missing)
        text: Raw memory text
        metadata: Optional key/value map used for retrieval filtering
        importance_hint: Optional "low" / "medium" / "high" prior
        external_id: Optional external identifier of the session
        config: Resolved engine configuration

    Returns:
        StoreResult; ``deduplicated`` is True when the write was merged

    Raises:
        ValidationError: If session_id/text is empty or the hint is unknown
        EmbeddingProviderUnavailable: If embeddings are required but unavailable
        StoreUnavailable: If the store fails

    Example:
        >>> store = await HybridStore.create(ephemeral=True)
        >>> result = await memory_store(
        ...     store, DisabledEmbeddingProvider(), "s1",
        ...     "Decided to buy the Tesla Model 3 on Friday",
        ...     importance_hint="high",
        ... )
        >>> result.deduplicated
        False
    """
    session_id = _require_session_id(session_id)
    if not text or not text.strip():
        raise ValidationError("Text cannot be empty", field="text")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", field="metadata")

    try:
        importance_hint_prior(importance_hint)
    except ValueError as e:
        raise ValidationError(str(e), field="importance_hint") from e

    normalized = normalize_text(truncate_text(text, config.max_text_length))
    compressed = compress_text(normalized, config.compress_length)
    importance = estimate_importance(normalized, importance_hint, config.max_text_length)

    await store.upsert_session(session_id, external_id=external_id)

    embedding = await embed_or_degrade(embedder, normalized, is_query=False, config=config)

    if embedding:
        now = utcnow()
        duplicate_id = await find_recent_duplicate(store, session_id, embedding, config, now=now)
        if duplicate_id:
            existing = await store.get_memory(duplicate_id)
            if existing is not None:
                await store.update_last_accessed([duplicate_id], now)
                logger.info(f"Merged duplicate memory into {duplicate_id} (session {session_id})")
                return StoreResult(
                    id=existing.id,
                    session_id=existing.session_id,
                    importance_score=existing.importance_score,
                    created_at=existing.created_at,
                    deduplicated=True,
                )

    memory = await store.add_memory(
        session_id=session_id,
        text=normalized,
        compressed_text=compressed,
        importance_score=importance,
        embedding=embedding,
        metadata=metadata,
    )
    logger.debug(
        f"Stored memory {memory.id} (session {session_id}, importance {importance:.2f}, "
        f"embedding={'yes' if embedding else 'no'})"
    )

    return StoreResult(
        id=memory.id,
        session_id=memory.session_id,
        importance_score=memory.importance_score,
        created_at=memory.created_at,
    )


async def memory_clear(
    store: "MemoryStore",
    session_id: str,
    memory_ids: Optional[list[str]] = None,
) -> ClearResult:
    """Soft-delete all memories of a session, or only the listed ones.

    Clearing an unknown session is not an error; it clears nothing.

    Raises:
        ValidationError: If session_id is empty
        StoreUnavailable: If the store fails
    """
    session_id = _require_session_id(session_id)
    if memory_ids is not None and not memory_ids:
        return ClearResult(session_id=session_id, cleared=0)

    cleared = await store.soft_delete(session_id, memory_ids)
    logger.info(f"Cleared {cleared} memories from session {session_id}")
    return ClearResult(session_id=session_id, cleared=cleared)


async def session_summary(store: "MemoryStore", session_id: str) -> SessionSummary:
    """Summarize a session: its record, active memory count and last access.

    Raises:
        SessionNotFound: If the session does not exist
        StoreUnavailable: If the store fails
    """
    session_id = _require_session_id(session_id)
    session = await store.get_session(session_id)
    if session is None:
        raise SessionNotFound(session_id)

    return SessionSummary(
        id=session.id,
        external_id=session.external_id,
        created_at=session.created_at,
        updated_at=session.updated_at,
        memory_count=await store.count_active(session_id),
        last_accessed_at=await store.latest_accessed(session_id),
    )
