"""Store port used by the memory engine.

The engine depends only on this protocol. Whether similarity is answered by
a vector index or computed in-process is an adapter decision
(see HybridStore).
"""

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from engram.memory.types import Memory, Session


class MemoryStore(Protocol):
    """Durable memory and session operations the engine needs."""

    # Memory operations

    async def add_memory(
        self,
        session_id: str,
        text: str,
        compressed_text: str,
        importance_score: float,
        embedding: Optional[list[float]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Memory:
        ...

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        ...

    async def list_active_by_session(self, session_id: str, limit: int) -> list[Memory]:
        ...

    async def find_similar(
        self,
        session_id: str,
        embedding: Sequence[float],
        limit: int,
        min_score: float,
    ) -> list[tuple[Memory, float]]:
        ...

    async def find_duplicate(
        self,
        session_id: str,
        embedding: Sequence[float],
        created_after: datetime,
        threshold: float,
    ) -> Optional[str]:
        ...

    async def update_last_accessed(self, memory_ids: Sequence[str], timestamp: datetime) -> int:
        ...

    async def soft_delete(self, session_id: str, memory_ids: Optional[Sequence[str]] = None) -> int:
        ...

    async def soft_delete_by_ids(self, memory_ids: Sequence[str]) -> int:
        ...

    async def find_prunable(
        self,
        created_before: datetime,
        last_accessed_before: datetime,
        max_importance: float,
        take: int,
    ) -> list[Memory]:
        ...

    async def count_active(self, session_id: str) -> int:
        ...

    async def latest_accessed(self, session_id: str) -> Optional[datetime]:
        ...

    # Session operations

    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    async def upsert_session(self, session_id: str, external_id: Optional[str] = None) -> Session:
        ...
