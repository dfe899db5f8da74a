import time
import fnmatch
from typing import Any, Optional, Dict
from dataclasses import dataclass

from .interface import CacheInterface
from common.core.otel_axiom_exporter import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached entry with expiration."""

    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or time.monotonic()) >= self.expires_at


class MemoryCache(CacheInterface):
    """Process-local cache. Used in tests and single-process deployments."""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        logger.info("Memory cache provider initialized")

    def _purge_expired(self) -> None:
        now = time.monotonic()
        expired_keys = [k for k, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]

    async def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None

        if entry.is_expired():
            del self._cache[key]
            return None

        return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        expires_at = time.monotonic() + ttl if ttl else None
        self._cache[key] = CacheEntry(value=value, expires_at=expires_at)
        logger.debug(f"Cached key {key} with TTL {ttl}")
        return True

    async def delete(self, key: str) -> bool:
        if self._cache.pop(key, None) is None:
            return False
        logger.debug(f"Deleted cache key {key}")
        return True

    async def delete_pattern(self, pattern: str) -> int:
        self._purge_expired()
        matching_keys = [k for k in self._cache if fnmatch.fnmatch(k, pattern)]
        for key in matching_keys:
            del self._cache[key]

        logger.debug(f"Deleted {len(matching_keys)} cache keys matching {pattern}")
        return len(matching_keys)

    async def clear(self) -> bool:
        self._cache.clear()
        return True
