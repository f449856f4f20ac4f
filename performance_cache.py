"""
Performance caching utilities
Per-instance TTL cache for read-mostly pricing rows
"""

import logging
import time
from typing import Dict, Any, Optional, Callable

logger = logging.getLogger(__name__)

class SimpleCache:
    """Simple in-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Get cached value, dropping it if expired"""
        entry = self.cache.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry['expires'] <= self._clock():
            del self.cache[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry['value']

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set cached value"""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        now = self._clock()
        self.cache[key] = {
            'value': value,
            'expires': now + ttl,
            'created': now
        }

    def stats(self) -> Dict[str, Any]:
        return {
            'total_entries': len(self.cache),
            'hits': self.hits,
            'misses': self.misses,
        }
