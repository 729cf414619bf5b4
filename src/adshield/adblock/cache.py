"""
Bounded decision cache for the URL classifier.

The eviction policy is threshold based, not least-recently-used: once the
cache is full, the next insertion first drops either every entry or the oldest
half by insertion order. Lookups do not refresh an entry's position.
"""

from __future__ import annotations

import logging
from enum import Enum
from itertools import islice
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_CAPACITY = 1000


class EvictionPolicy(Enum):
    """What to drop when the cache is full."""

    CLEAR = "clear"
    HALF = "half"


class DecisionCache(Generic[V]):
    """Insertion-ordered URL -> decision mapping with a hard size bound."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        policy: EvictionPolicy = EvictionPolicy.CLEAR,
    ) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be positive")
        self._capacity = capacity
        self._policy = policy
        self._entries: dict[str, V] = {}
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evictions(self) -> int:
        return self._evictions

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def get(self, url: str) -> V | None:
        return self._entries.get(url)

    def put(self, url: str, value: V) -> None:
        """Store a decision, evicting first if the cache is full."""
        if url not in self._entries and len(self._entries) >= self._capacity:
            self._evict()
        self._entries[url] = value

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        self._evictions += 1
        if self._policy is EvictionPolicy.CLEAR:
            self._entries.clear()
            logger.debug("Decision cache full, cleared")
            return

        # Dicts keep insertion order, so the first keys are the oldest
        drop = max(1, len(self._entries) // 2)
        for key in list(islice(self._entries, drop)):
            del self._entries[key]
        logger.debug("Decision cache full, dropped %d oldest entries", drop)
