"""Read path: candidate scoring, filtering and token-budgeted assembly."""

import logging
from typing import TYPE_CHECKING, Any, Optional

from engram.embedding.base import EmbeddingProvider
from engram.errors import SessionNotFound, ValidationError
from engram.memory.operations import _require_session_id, embed_or_degrade
from engram.memory.scoring import hybrid_score, memory_age_ms
from engram.memory.text import estimate_tokens, keyword_overlap, normalize_text
from engram.memory.types import (
    EngineConfig,
    Memory,
    RetrievedMemory,
    RetrieveResult,
    ScoredMemory,
    utcnow,
)

if TYPE_CHECKING:
    from engram.storage.base import MemoryStore

logger = logging.getLogger(__name__)

# Similarity floor passed to the store so every session candidate comes back;
# the engine applies the real floor itself to support the low-confidence fallback.
_FETCH_ALL_SCORE = -1.0


def _matches_metadata(memory: Memory, metadata_filter: Optional[dict[str, Any]]) -> bool:
    """True if every filter key equals the memory's metadata value."""
    if not metadata_filter:
        return True
    if not memory.metadata:
        return False
    return all(
        key in memory.metadata and memory.metadata[key] == value
        for key, value in metadata_filter.items()
    )


def _sort_key(candidate: ScoredMemory) -> tuple[float, str]:
    return (-candidate.final_score, candidate.memory.id)


def _apply_similarity_floor(
    candidates: list[ScoredMemory],
    min_score: float,
) -> tuple[list[ScoredMemory], bool]:
    """Keep candidates whose similarity is at or above min_score.

    If none qualify but candidates exist, keep only the best-scoring one and
    report low confidence.

    Returns:
        (surviving candidates, low_confidence)
    """
    passing = [c for c in candidates if c.similarity >= min_score]
    if passing or not candidates:
        return passing, False
    return [min(candidates, key=_sort_key)], True


def _pack_token_budget(
    candidates: list[ScoredMemory],
    max_tokens: int,
) -> tuple[list[ScoredMemory], int]:
    """Take candidates in order until the next one would exceed max_tokens.

    Returns:
        (packed candidates, total estimated tokens)
    """
    packed: list[ScoredMemory] = []
    used = 0
    for candidate in candidates:
        cost = estimate_tokens(candidate.memory.text)
        if used + cost > max_tokens:
            break
        packed.append(candidate)
        used += cost
    return packed, used


async def _unembedded_candidates(
    store: "MemoryStore",
    session_id: str,
    pairs: list[tuple[Memory, float]],
    config: EngineConfig,
) -> list[tuple[Memory, float]]:
    """Active session memories the similarity search could not compare.

    Memories written without a vector (or with one of another dimension)
    never come back from find_similar; they score similarity 0.
    """
    room = config.candidate_limit - len(pairs)
    if room <= 0:
        return []
    seen = {memory.id for memory, _ in pairs}
    memories = await store.list_active_by_session(session_id, limit=config.candidate_limit)
    return [(memory, 0.0) for memory in memories if memory.id not in seen][:room]


def _validate(
    query: str,
    limit: Optional[int],
    min_score: Optional[float],
    max_tokens: Optional[int],
    metadata: Optional[dict[str, Any]],
    config: EngineConfig,
) -> None:
    if not query or not query.strip():
        raise ValidationError("Query cannot be empty", field="query")
    if len(query) > config.max_text_length:
        raise ValidationError(
            f"Query exceeds {config.max_text_length} characters", field="query"
        )
    if limit is not None and not 1 <= limit <= config.max_result_limit:
        raise ValidationError(
            f"limit must be between 1 and {config.max_result_limit}", field="limit"
        )
    if min_score is not None and not -1.0 <= min_score <= 1.0:
        raise ValidationError("min_score must be between -1.0 and 1.0", field="min_score")
    if max_tokens is not None and max_tokens < 1:
        raise ValidationError("max_tokens must be positive", field="max_tokens")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", field="metadata")


async def memory_retrieve(
    store: "MemoryStore",
    embedder: EmbeddingProvider,
    session_id: str,
    query: str,
    limit: Optional[int] = None,
    min_score: Optional[float] = None,
    max_tokens: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    config: EngineConfig = EngineConfig(),
) -> RetrieveResult:
    """Retrieve the memories of a session most relevant to a query.

    Workflow:
    1. Resolve the session (unknown sessions are an error)
    2. Embed the query; without a vector, fall back to keyword overlap
    3. Fetch up to ``candidate_limit`` candidates (memories without a comparable
       vector join with similarity 0) and drop metadata mismatches
    4. Score each with the hybrid score and apply the similarity floor, with
       a single low-confidence result when nothing clears it
    5. Sort by final score (ties by id), pack into the token budget, then
       apply the result limit
    6. Stamp last_accessed_at of the returned memories in one bulk update

    Args:
        store: Store port implementation
        embedder: Embedding provider
        session_id: Session to search
        query: Query text
        limit: Maximum results (default: config.default_result_limit)
        min_score: Similarity floor (default: config.min_similarity_score)
        max_tokens: Token budget (default: config.default_token_budget)
        metadata: Optional equality filter on memory metadata
        config: Resolved engine configuration

    Returns:
        RetrieveResult with ordered results and token usage

    Raises:
        SessionNotFound: If the session does not exist
        ValidationError: If any argument is malformed
        EmbeddingProviderUnavailable: If embeddings are required but unavailable
        StoreUnavailable: If the store fails
    """
    session_id = _require_session_id(session_id)
    _validate(query, limit, min_score, max_tokens, metadata, config)

    limit = limit if limit is not None else config.default_result_limit
    floor = min_score if min_score is not None else config.min_similarity_score
    budget = max_tokens if max_tokens is not None else config.default_token_budget

    if await store.get_session(session_id) is None:
        raise SessionNotFound(session_id)

    normalized_query = normalize_text(query)
    query_vector = await embed_or_degrade(embedder, normalized_query, is_query=True, config=config)

    if query_vector:
        pairs = await store.find_similar(
            session_id, query_vector, limit=config.candidate_limit, min_score=_FETCH_ALL_SCORE
        )
        pairs.extend(await _unembedded_candidates(store, session_id, pairs, config))
    else:
        memories = await store.list_active_by_session(session_id, limit=config.candidate_limit)
        pairs = [(memory, keyword_overlap(memory.text, normalized_query)) for memory in memories]

    now = utcnow()
    candidates: list[ScoredMemory] = []
    for memory, similarity in pairs:
        if not _matches_metadata(memory, metadata):
            continue
        score = hybrid_score(
            similarity,
            memory_age_ms(memory, now),
            memory.importance_score,
            config.weights,
            config.recency_half_life_hours,
        )
        candidates.append(
            ScoredMemory(
                memory=memory,
                similarity=similarity,
                recency_score=score.recency_score,
                final_score=score.final_score,
            )
        )

    surviving, low_confidence = _apply_similarity_floor(candidates, floor)
    surviving.sort(key=_sort_key)
    packed, _ = _pack_token_budget(surviving, budget)
    selected = packed[:limit]
    token_usage = sum(estimate_tokens(c.memory.text) for c in selected)

    if selected:
        await store.update_last_accessed([c.memory.id for c in selected], now)

    logger.debug(
        f"Retrieved {len(selected)}/{len(candidates)} memories for session {session_id} "
        f"(mode={'vector' if query_vector else 'lexical'}, tokens={token_usage}, "
        f"low_confidence={low_confidence})"
    )

    low_confidence = low_confidence and bool(selected)
    results = [
        RetrievedMemory(
            id=c.memory.id,
            text=c.memory.text,
            compressed_text=c.memory.compressed_text,
            importance_score=c.memory.importance_score,
            similarity=c.similarity,
            score=c.final_score,
            created_at=c.memory.created_at,
            last_accessed_at=max(c.memory.last_accessed_at, now),
            metadata=c.memory.metadata,
            low_confidence=low_confidence,
        )
        for c in selected
    ]

    return RetrieveResult(
        session_id=session_id,
        query=query,
        results=results,
        token_usage=token_usage,
        low_confidence=low_confidence,
    )
