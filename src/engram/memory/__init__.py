"""Memory module for the engram system.

This module provides the core data types, the pure text/scoring functions and
the engine operations for storing, retrieving and pruning memories.
"""

from engram.memory.operations import (
    find_recent_duplicate,
    memory_clear,
    memory_store,
    session_summary,
)
from engram.memory.pruning import memory_prune
from engram.memory.retrieval import memory_retrieve
from engram.memory.types import (
    ClearResult,
    EngineConfig,
    ImportanceHint,
    Memory,
    PruneResult,
    RetrievedMemory,
    RetrieveResult,
    ScoringWeights,
    Session,
    SessionSummary,
    StoreResult,
)

__all__ = [
    "ClearResult",
    "EngineConfig",
    "ImportanceHint",
    "Memory",
    "PruneResult",
    "RetrievedMemory",
    "RetrieveResult",
    "ScoringWeights",
    "Session",
    "SessionSummary",
    "StoreResult",
    "find_recent_duplicate",
    "memory_clear",
    "memory_prune",
    "memory_retrieve",
    "memory_store",
    "session_summary",
]
