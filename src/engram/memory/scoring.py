"""Recency decay, cosine similarity, and the hybrid ranking score.

All functions here are pure so they can be tested in isolation.

Hybrid score formula:
    final = w.similarity * clamp01(similarity)
          + w.recency * recency_score(age)
          + w.importance * clamp01(importance)

Recency uses exponential half-life decay:
    recency = exp(-ln(2) * age_hours / half_life_hours)
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from engram.memory.types import Memory, ScoringWeights, utcnow

_MS_PER_HOUR = 60 * 60 * 1000


def clamp01(value: float) -> float:
    """Clamp a value to the [0, 1] range."""
    return min(1.0, max(0.0, value))


def recency_score(age_ms: float, half_life_hours: float = 24.0) -> float:
    """Exponential-decay recency score for an age in milliseconds.

    Args:
        age_ms: Age of the memory in milliseconds
        half_life_hours: Age at which the score halves (default: 24)

    Returns:
        1.0 for age 0, 0.5 at one half-life, clamped to [0, 1]
    """
    hours = age_ms / _MS_PER_HOUR
    return clamp01(math.exp(-math.log(2) * (hours / half_life_hours)))


def memory_age_ms(memory: Memory, now: Optional[datetime] = None) -> float:
    """Age of a memory: the smaller of time since creation and since last access.

    A memory counts as fresh when it was either created or touched recently.
    """
    now = now or utcnow()
    created_age = (now - memory.created_at).total_seconds() * 1000
    accessed_age = (now - memory.last_accessed_at).total_seconds() * 1000
    return max(0.0, min(created_age, accessed_age))


@dataclass(frozen=True)
class HybridScore:
    """Components of a hybrid score."""
    final_score: float
    recency_score: float
    similarity: float


def hybrid_score(
    similarity: float,
    recency_ms: float,
    importance: float,
    weights: ScoringWeights,
    half_life_hours: float = 24.0,
) -> HybridScore:
    """Combine similarity, recency and importance into one ranking score.

    Args:
        similarity: Query similarity (clamped to [0, 1])
        recency_ms: Memory age in milliseconds
        importance: Importance score (clamped to [0, 1])
        weights: Non-negative component weights
        half_life_hours: Recency half-life

    Returns:
        HybridScore with the final score and its recency/similarity parts
    """
    recency = recency_score(recency_ms, half_life_hours)
    sim = clamp01(similarity)
    final = (
        weights.similarity * sim
        + weights.recency * recency
        + weights.importance * clamp01(importance)
    )
    return HybridScore(final_score=final, recency_score=recency, similarity=sim)


def cosine_similarity(
    a: Optional[Sequence[float]],
    b: Optional[Sequence[float]],
) -> float:
    """Exact cosine similarity between two vectors.

    Returns 0.0 when either vector is missing or empty, the lengths differ,
    or either vector has zero norm. Otherwise the result is in [-1, 1].
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Floating error can push identical vectors slightly past 1
    return max(-1.0, min(1.0, dot / (math.sqrt(norm_a) * math.sqrt(norm_b))))
