"""Time-bounded in-process cache for rendered planner pages."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from src.config import HTML_CACHE_TTL_S
from src.models import Coordinate

logger = logging.getLogger(__name__)

V = TypeVar("V")


def cache_key(origin: Coordinate, destination: Coordinate) -> str:
    """Origin/destination key quantized to 4 decimals (about 11 m)."""
    return "%.4f_%.4f_%.4f_%.4f" % (origin[0], origin[1], destination[0], destination[1])


@dataclass
class CacheEntry(Generic[V]):
    key: str
    value: V
    stored_at: float


class TTLCache(Generic[V]):
    """Key/value store whose entries expire *ttl_s* seconds after writing.

    Stale entries are evicted when read; nothing sweeps in the background.
    """

    def __init__(self, ttl_s: float = HTML_CACHE_TTL_S, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            age = self.clock() - entry.stored_at
            if age >= self.ttl_s:
                del self._entries[key]
                logger.info("Cache entry %s expired (%.0fs old)", key, age)
                return None
            logger.info("Cache hit %s (%.0fs old)", key, age)
            return entry.value

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(key, value, self.clock())

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
