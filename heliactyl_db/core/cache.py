"""In-process read cache with LRU eviction and per-entry TTL.

Sits in front of the storage engine for hot keys. It is never the source of
truth: writes always reach storage first, and expiry here is independent of
the TTL stored in the envelope.
"""

import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from heliactyl_db.core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    value: Any
    ttl: int  # milliseconds
    expires_at: float  # clock seconds


def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """Translate a ``*`` wildcard pattern into an anchored regex."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


class ReadCache:
    """LRU cache bounded by entry count and per-entry TTL.

    A read refreshes both the entry's recency and, when ``update_age_on_get``
    is set, its age, so frequently read keys stay cached.
    """

    def __init__(self, max_entries: int = 500, default_ttl: int = 300000,
                 update_age_on_get: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.update_age_on_get = update_age_on_get
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]

    def get(self, key: str) -> Optional[Any]:
        """Get a cached value, or None on miss or expiry."""
        entry = self._live_entry(key)
        if entry is None:
            log_cache_operation(logger, "get", key, hit=False)
            return None

        self._entries.move_to_end(key)
        if self.update_age_on_get:
            entry.expires_at = self._clock() + entry.ttl / 1000
        log_cache_operation(logger, "get", key, hit=True)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Cache a value for ``ttl`` milliseconds, evicting the least recently used.

        A ``ttl`` of zero or less leaves nothing cached under ``key``.
        """
        if ttl is None:
            ttl = self.default_ttl
        if ttl <= 0:
            self._entries.pop(key, None)
            log_cache_operation(logger, "skip", key, ttl=ttl)
            return
        self._entries[key] = CacheEntry(value=value, ttl=ttl, expires_at=self._clock() + ttl / 1000)
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log_cache_operation(logger, "evict", evicted)
        log_cache_operation(logger, "set", key, ttl=ttl)

    def delete(self, key: str) -> bool:
        deleted = self._entries.pop(key, None) is not None
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a ``*`` wildcard pattern. Returns count removed."""
        regex = compile_pattern(pattern)
        keys_to_delete = [k for k in self._entries if regex.match(k)]
        for key in keys_to_delete:
            del self._entries[key]
        log_cache_operation(logger, "clear_pattern", pattern, deleted=len(keys_to_delete))
        return len(keys_to_delete)

    def keys(self) -> List[str]:
        self._purge_expired()
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]],
                         ttl: Optional[int] = None) -> Any:
        """Return the cached value or compute, cache and return it.

        None results are returned but never cached.
        """
        entry = self._live_entry(key)
        if entry is not None:
            return self.get(key)

        value = await factory()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def snapshot(self) -> Dict[str, Any]:
        return {
            "size": len(self),
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
        }
