"""Core data types for the memory engine.

This module defines the data structures used throughout engram:
- Memory: A stored, session-scoped piece of text
- Session: The conversational context that owns memories
- ImportanceHint: Caller-supplied prior for importance estimation
- ScoringWeights / EngineConfig: Resolved configuration seen by the engine
- StoreResult, RetrievedMemory, RetrieveResult, ClearResult,
  SessionSummary, PruneResult: Results of the engine operations
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ImportanceHint(Enum):
    """Caller-supplied importance prior.

    - LOW: prior 0.3
    - MEDIUM: prior 0.6
    - HIGH: prior 0.9
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Memory:
    """A memory entry owned by a session.

    Attributes:
        id: Opaque unique identifier assigned at creation
        session_id: Owning session
        text: Normalized, length-bounded content
        compressed_text: Head ... tail display summary of ``text``
        importance_score: Importance in [0, 1], fixed at creation
        created_at: Creation time (UTC)
        last_accessed_at: Last read-path hit or duplicate merge (UTC)
        embedding: Optional fixed-length vector
        metadata: Opaque key/value map used for equality filtering
        is_deleted: Soft-delete flag, never reset once set

    Raises:
        ValueError: If importance_score is out of range
    """
    id: str
    session_id: str
    text: str
    compressed_text: str
    importance_score: float
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    embedding: Optional[list[float]] = None
    metadata: Optional[dict[str, Any]] = None
    is_deleted: bool = False

    def __post_init__(self) -> None:
        """Validate memory fields after initialization."""
        if not 0.0 <= self.importance_score <= 1.0:
            raise ValueError(
                f"Importance must be between 0.0 and 1.0, got {self.importance_score}"
            )


@dataclass
class Session:
    """A conversation/agent context that owns zero or more memories."""
    id: str
    external_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the hybrid score.

    Not required to sum to 1; any non-negative values are accepted.
    """
    similarity: float = 0.5
    recency: float = 0.2
    importance: float = 0.3

    def __post_init__(self) -> None:
        for name in ("similarity", "recency", "importance"):
            if getattr(self, name) < 0:
                raise ValueError(f"Scoring weight '{name}' must be non-negative")


@dataclass(frozen=True)
class EngineConfig:
    """Resolved configuration consumed by the engine operations.

    Built once at startup (see ``EngramSettings.engine_config``); the
    operations never read the environment themselves.
    """
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    min_similarity_score: float = 0.5
    max_text_length: int = 4000
    compress_length: int = 220
    recency_half_life_hours: float = 24.0
    duplicate_threshold: float = 0.95
    duplicate_window_hours: float = 24.0
    default_result_limit: int = 5
    max_result_limit: int = 50
    default_token_budget: int = 1000
    candidate_limit: int = 200
    require_embeddings: bool = False
    prune_max_age_days: float = 90.0
    prune_inactive_days: float = 30.0
    prune_importance_threshold: float = 0.3
    prune_batch_size: int = 500


@dataclass
class StoreResult:
    """Result of a memory store operation.

    Attributes:
        id: ID of the stored (or merged) memory
        session_id: Owning session
        importance_score: Importance of the stored memory
        created_at: Creation time of the stored memory
        deduplicated: True when the write merged into an existing memory
    """
    id: str
    session_id: str
    importance_score: float
    created_at: datetime
    deduplicated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "importance_score": self.importance_score,
            "created_at": self.created_at.isoformat(),
            "deduplicated": self.deduplicated,
        }


@dataclass
class ScoredMemory:
    """A retrieval candidate with its scores."""
    memory: Memory
    similarity: float
    recency_score: float
    final_score: float


@dataclass
class RetrievedMemory:
    """A single item of a retrieval response."""
    id: str
    text: str
    compressed_text: str
    importance_score: float
    similarity: float
    score: float
    created_at: datetime
    last_accessed_at: datetime
    metadata: Optional[dict[str, Any]] = None
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "compressed_text": self.compressed_text,
            "importance_score": self.importance_score,
            "similarity": self.similarity,
            "score": self.score,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "metadata": self.metadata,
        }
        if self.low_confidence:
            result["low_confidence"] = True
        return result


@dataclass
class RetrieveResult:
    """Result of a retrieval: ordered items plus estimated token usage."""
    session_id: str
    query: str
    results: list[RetrievedMemory] = field(default_factory=list)
    token_usage: int = 0
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "query": self.query,
            "token_usage": self.token_usage,
            "low_confidence": self.low_confidence,
            "results": [item.to_dict() for item in self.results],
        }


@dataclass
class ClearResult:
    """Number of memories soft-deleted by a clear operation."""
    session_id: str
    cleared: int = 0


@dataclass
class SessionSummary:
    """Aggregate view of a session."""
    id: str
    created_at: datetime
    updated_at: datetime
    external_id: Optional[str] = None
    memory_count: int = 0
    last_accessed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "memory_count": self.memory_count,
            "last_accessed_at": (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }


@dataclass
class PruneResult:
    """Result of a pruning batch.

    Attributes:
        candidates: Number of memories selected by the prune predicate
        pruned: Number actually soft-deleted (may be lower under races)
        pruned_ids: IDs of the selected candidates
    """
    candidates: int = 0
    pruned: int = 0
    pruned_ids: list[str] = field(default_factory=list)
