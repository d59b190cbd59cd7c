"""Short-lived caching of effective permission sets.

The cache is an optimization only: it is never a source of truth.
Entries expire after a short TTL and are dropped synchronously whenever a
binding for that principal, or any role definition, changes.

Writes are generation-checked. A reader records the principal's
generation before it reads the store; if an invalidation happens while
the read is in flight, the generation moves on and the (now stale) result
is not cached.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("cmms_authz.cache")


class MemoryCacheBackend:
    """In-process LRU cache with TTL expiration.

    Items are evicted when:
    - The cache exceeds max_size (least recently used item is evicted).
    - An item's TTL has expired (checked on access).
    """

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 30):
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._cache: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Any | None:
        if key not in self._cache:
            return None

        timestamp, value = self._cache[key]
        if time.monotonic() - timestamp >= self._ttl:
            del self._cache[key]
            return None

        self._cache.move_to_end(key)
        return value

    def put(self, key: str, value: Any) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = (time.monotonic(), value)

        while len(self._cache) > self._max_size:
            self._cache.popitem(last=False)

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)


@dataclass(frozen=True)
class Generation:
    """Opaque token identifying the cache state a read started from."""

    epoch: int
    principal: int


class PermissionCache:
    """Per-principal cache of effective permission sets."""

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 30, enabled: bool = True):
        self.enabled = enabled
        self._backend = MemoryCacheBackend(max_size=max_size, ttl_seconds=ttl_seconds)
        self._max_generations = max_size
        self._epoch = 0
        self._generations: dict[str, int] = {}
        self._hits = 0
        self._misses = 0

    def generation(self, principal_id: str) -> Generation:
        return Generation(self._epoch, self._generations.get(principal_id, 0))

    def get(self, principal_id: str) -> Any | None:
        if not self.enabled:
            return None
        value = self._backend.get(principal_id)
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    def put(self, principal_id: str, value: Any, generation: Generation) -> bool:
        """Cache ``value`` unless the principal was invalidated since ``generation``."""
        if not self.enabled:
            return False
        if generation != self.generation(principal_id):
            logger.debug("Discarding stale permission set for %s", principal_id)
            return False
        self._backend.put(principal_id, value)
        return True

    def invalidate(self, principal_id: str) -> None:
        self._backend.delete(principal_id)
        full = len(self._generations) >= self._max_generations
        if full and principal_id not in self._generations:
            # Moving the epoch voids every in-flight read, so the counters can go
            self._epoch += 1
            self._generations.clear()
            logger.debug("Generation map reset (epoch=%d)", self._epoch)
        self._generations[principal_id] = self._generations.get(principal_id, 0) + 1

    def clear(self) -> None:
        """Drop every entry; used when a role definition changes."""
        self._epoch += 1
        self._generations.clear()
        self._backend.clear()
        logger.debug("Permission cache cleared (epoch=%d)", self._epoch)

    @property
    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "size": self._backend.size(),
            "hits": self._hits,
            "misses": self._misses,
            "epoch": self._epoch,
            "tracked_principals": len(self._generations),
        }
