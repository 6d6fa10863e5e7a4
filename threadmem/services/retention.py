"""
Retention policy engine: decides which memory entries to evict.

The engine is pure. It never talks to a backend; callers fetch the entries, ask for the
eviction list and delete the returned ids themselves.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from ..exceptions import InvalidInputError
from ..models.core import MemoryEntry
from ..utils.config import RetentionConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)


class EvictionStrategy(str, Enum):
    LRU = 'lru'
    LFU = 'lfu'
    FIFO = 'fifo'
    IMPORTANCE = 'importance'


class ImportanceStrategy(str, Enum):
    KEEP_ABOVE = 'keep_above'
    KEEP_BELOW = 'keep_below'


@dataclass
class RetentionPreview:
    """What a retention run would do, without doing it."""
    total: int
    to_evict: List[str] = field(default_factory=list)
    aged: int = 0
    per_thread_excess: Dict[str, int] = field(default_factory=dict)
    global_excess: int = 0


def _lru_key(entry: MemoryEntry):
    return (entry.last_accessed_at, entry.creation_key)


def _lfu_key(entry: MemoryEntry):
    return (entry.access_count, entry.last_accessed_at, entry.creation_key)


def _fifo_key(entry: MemoryEntry):
    return entry.creation_key


class RetentionPolicyEngine:
    """Applies a retention policy to a set of memory entries.

    Order of application:

    1. ``max_age``: every entry created before ``now - max_age`` goes, whatever the strategy.
    2. ``max_per_thread``: each thread over its cap loses its first entries in strategy order.
    3. Global cap (smallest of ``max_entries`` and ``max_total``): entries of active threads
       are never evicted at this step, since per-thread caps govern them.

    Each step only evicts the excess left by the previous ones, so when age eviction alone
    satisfies the caps nothing else is removed.
    """

    def __init__(self, policy: Optional[RetentionConfig] = None):
        self.policy = policy or RetentionConfig()
        self._validate(self.policy)

    @staticmethod
    def _validate(policy: RetentionConfig) -> None:
        try:
            EvictionStrategy(policy.eviction_strategy)
            ImportanceStrategy(policy.importance_strategy)
        except ValueError as e:
            raise InvalidInputError(f'Invalid retention policy: {e}', operation='retention') from e

    def order_for_eviction(self, entries: Iterable[MemoryEntry], policy: Optional[RetentionConfig] = None) -> List[MemoryEntry]:
        """Sort entries so the first one is the first to evict under the policy's strategy."""
        policy = policy or self.policy
        strategy = EvictionStrategy(policy.eviction_strategy)
        entries = list(entries)

        if strategy is EvictionStrategy.LRU:
            return sorted(entries, key=_lru_key)
        if strategy is EvictionStrategy.LFU:
            return sorted(entries, key=_lfu_key)
        if strategy is EvictionStrategy.FIFO:
            return sorted(entries, key=_fifo_key)

        threshold = policy.importance_threshold
        if ImportanceStrategy(policy.importance_strategy) is ImportanceStrategy.KEEP_ABOVE:
            losing = [e for e in entries if e.importance < threshold]
            winning = [e for e in entries if e.importance >= threshold]
        else:
            losing = [e for e in entries if e.importance > threshold]
            winning = [e for e in entries if e.importance <= threshold]
        return sorted(losing, key=_lru_key) + sorted(winning, key=_lru_key)

    def preview(self,
                entries: Iterable[MemoryEntry],
                policy: Optional[RetentionConfig] = None,
                now: Optional[datetime] = None,
                active_threads: Optional[Set[str]] = None) -> RetentionPreview:
        """
        Compute the evictions for ``entries`` along with a breakdown per step.

        Args:
            entries: Full or thread-scoped entry set
            policy: Policy override, defaults to the engine's policy
            now: Reference time for age checks
            active_threads: Threads protected from global-cap eviction

        Returns:
            RetentionPreview whose ``to_evict`` lists ids in eviction order
        """
        policy = policy or self.policy
        self._validate(policy)
        now = now or utc_now()
        active_threads = active_threads or set()
        entries = list(entries)

        preview = RetentionPreview(total=len(entries))
        evicted: Set[str] = set()

        def evict(batch: Iterable[MemoryEntry]) -> None:
            for entry in batch:
                if entry.id not in evicted:
                    evicted.add(entry.id)
                    preview.to_evict.append(entry.id)

        if policy.max_age:
            cutoff = now - timedelta(seconds=policy.max_age)
            aged = sorted((e for e in entries if e.created_at < cutoff), key=_fifo_key)
            preview.aged = len(aged)
            evict(aged)

        remaining = [e for e in entries if e.id not in evicted]

        if policy.max_per_thread:
            threads: 'OrderedDict[str, List[MemoryEntry]]' = OrderedDict()
            for entry in remaining:
                threads.setdefault(entry.thread_id, []).append(entry)
            for thread_id, thread_entries in threads.items():
                excess = len(thread_entries) - policy.max_per_thread
                if excess > 0:
                    preview.per_thread_excess[thread_id] = excess
                    evict(self.order_for_eviction(thread_entries, policy)[:excess])
            remaining = [e for e in remaining if e.id not in evicted]

        global_cap = policy.global_cap
        if global_cap and len(remaining) > global_cap:
            excess = len(remaining) - global_cap
            preview.global_excess = excess
            candidates = [e for e in remaining if e.thread_id not in active_threads]
            if len(candidates) < excess:
                logger.warning(f'Global cap {global_cap} exceeded by {excess} but only {len(candidates)} entries '
                               f'belong to inactive threads')
            evict(self.order_for_eviction(candidates, policy)[:excess])

        return preview

    def select_evictions(self,
                         entries: Iterable[MemoryEntry],
                         policy: Optional[RetentionConfig] = None,
                         now: Optional[datetime] = None,
                         active_threads: Optional[Set[str]] = None) -> List[str]:
        """Ids to evict, in eviction order, so that every cap in the policy holds."""
        preview = self.preview(entries, policy=policy, now=now, active_threads=active_threads)
        if preview.to_evict:
            logger.debug(f'Retention selected {len(preview.to_evict)} of {preview.total} entries '
                         f'(aged={preview.aged}, per_thread={sum(preview.per_thread_excess.values())}, '
                         f'global={preview.global_excess})')
        return preview.to_evict
