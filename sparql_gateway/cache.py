"""
SPARQL Gateway - Graph-name cache.
Maps a data file's base name to the named graph declared by its `.graph`
sidecar. Entries expire a fixed time after their last access; beyond the
capacity bound the least recently used entry is evicted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

logger = logging.getLogger("sparql_gateway.cache")

__all__ = ["GraphNameCache"]


class GraphNameCache:
    """Thread-safe TTL + LRU map of base file name -> graph URI.

    Uses OrderedDict for O(1) LRU ops; the oldest entry sits first.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

    def put(self, base_name: str, graph_uri: str) -> None:
        now = self._clock()
        with self._lock:
            self._entries[base_name] = (graph_uri, now)
            self._entries.move_to_end(base_name)
            self._purge_expired(now)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted graph mapping for %s", evicted)

    def get(self, base_name: str) -> str | None:
        """Return the graph URI for *base_name*, refreshing its expiry, or None."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(base_name)
            if entry is None:
                return None
            graph_uri, last_access = entry
            if now - last_access > self._ttl:
                del self._entries[base_name]
                return None
            self._entries[base_name] = (graph_uri, now)
            self._entries.move_to_end(base_name)
            return graph_uri

    def _purge_expired(self, now: float) -> None:
        # Access order equals recency order, so expired entries form a prefix.
        while self._entries:
            key, (_, last_access) = next(iter(self._entries.items()))
            if now - last_access <= self._ttl:
                break
            del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def __contains__(self, base_name: str) -> bool:
        return self.get(base_name) is not None

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
