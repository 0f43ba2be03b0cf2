"""
Cache Infrastructure
=====================

Process-local TTL cache for configuration lookups.

Entries expire after their TTL; reads are lock-protected so the cache
can be shared between the event loop and scheduler threads.
"""

import threading
import time
from typing import Any, Dict, Optional, Tuple

from sla.application.services import ICacheService
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class InMemoryCacheService(ICacheService):
    """
    TTL cache backed by a dict.

    Args:
        default_ttl_seconds: TTL used when ``set`` is called without one
    """

    def __init__(self, default_ttl_seconds: int = 300):
        self._default_ttl = default_ttl_seconds
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if time.monotonic() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (time.monotonic() + ttl, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        logger.debug("Cache entry invalidated", extra={"key": key})

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}


__all__ = ["InMemoryCacheService"]
