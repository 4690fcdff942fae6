"""Maintenance path: batch soft deletion of stale, unimportant memories."""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from engram.errors import ValidationError
from engram.memory.types import EngineConfig, PruneResult, utcnow

if TYPE_CHECKING:
    from engram.storage.base import MemoryStore

logger = logging.getLogger(__name__)

MAX_PRUNE_BATCH = 1000


async def memory_prune(
    store: "MemoryStore",
    config: EngineConfig = EngineConfig(),
    max_age_days: Optional[float] = None,
    inactive_days: Optional[float] = None,
    importance_threshold: Optional[float] = None,
    take: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PruneResult:
    """Soft-delete one batch of prune candidates.

    A memory is a candidate when it is not deleted, was created more than
    ``max_age_days`` ago, was last accessed more than ``inactive_days`` ago,
    and has importance at or below ``importance_threshold``. Candidates are
    taken least important first, then least recently accessed, up to
    ``take``. Re-running immediately prunes nothing more.

    Omitted parameters fall back to the prune settings of config.

    Returns:
        PruneResult with candidate and pruned counts

    Raises:
        ValidationError: If a parameter is out of range
        StoreUnavailable: If the store fails
    """
    max_age_days = config.prune_max_age_days if max_age_days is None else max_age_days
    inactive_days = config.prune_inactive_days if inactive_days is None else inactive_days
    threshold = (
        config.prune_importance_threshold if importance_threshold is None else importance_threshold
    )
    take = config.prune_batch_size if take is None else take

    if max_age_days <= 0:
        raise ValidationError("max_age_days must be positive", field="max_age_days")
    if inactive_days <= 0:
        raise ValidationError("inactive_days must be positive", field="inactive_days")
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(
            "importance_threshold must be between 0.0 and 1.0", field="importance_threshold"
        )
    if not 1 <= take <= MAX_PRUNE_BATCH:
        raise ValidationError(f"take must be between 1 and {MAX_PRUNE_BATCH}", field="take")

    now = now or utcnow()
    candidates = await store.find_prunable(
        created_before=now - timedelta(days=max_age_days),
        last_accessed_before=now - timedelta(days=inactive_days),
        max_importance=threshold,
        take=take,
    )
    if not candidates:
        return PruneResult()

    ids = [memory.id for memory in candidates]
    pruned = await store.soft_delete_by_ids(ids)
    logger.info(f"Pruned {pruned} of {len(ids)} candidate memories")

    return PruneResult(candidates=len(ids), pruned=pruned, pruned_ids=ids)
