"""Async key-value database with queuing, TTL and SQLite/PostgreSQL backends."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from heliactyl_db.core.backends import StorageBackend, select_backend
from heliactyl_db.core.cache import ReadCache
from heliactyl_db.core.cleanup import MaintenanceService
from heliactyl_db.core.config import Settings
from heliactyl_db.core.exceptions import (
    BackendError,
    CorruptValueError,
    HeliactylDBError,
    InvalidKeyError,
    NonNumericValueError,
)
from heliactyl_db.core.logging import get_logger
from heliactyl_db.core.queue import Operation, OperationQueue
from heliactyl_db.models.entry import LEGACY_TABLE
from heliactyl_db.models.envelope import Envelope, now_ms

logger = get_logger(__name__)

DEFAULT_CACHE_TTL = 300000  # milliseconds


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally (ESCAPE '\\')."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _require_key(key: Any) -> str:
    if not key or not isinstance(key, str):
        raise InvalidKeyError(key)
    return key


class KeyValueDatabase:
    """Namespaced key-value store over SQLite or PostgreSQL.

    Every storage call is funnelled through a per-handle FIFO queue, so a
    handle never runs two backend operations at once. Values are wrapped in
    an envelope carrying an optional expiry that is enforced on read and by a
    periodic sweep when TTL support is enabled.
    """

    def __init__(self, config: Any = None, *, settings: Optional[Settings] = None,
                 cache: Optional[ReadCache] = None, namespace: Optional[str] = None,
                 ttl_support: Optional[bool] = None, max_queue_size: Optional[int] = None,
                 operation_timeout: Optional[float] = None):
        self.settings = settings or Settings()
        if config is None:
            config = self.settings.database_url

        # Raises DatabaseConfigError before anything is opened
        self.backend: StorageBackend = select_backend(config, self.settings)

        self.namespace = namespace or self.settings.namespace
        self.ttl_support = self.settings.ttl_support if ttl_support is None else ttl_support
        self.queue = OperationQueue(
            max_size=max_queue_size or self.settings.max_queue_size,
            timeout=operation_timeout or self.settings.operation_timeout,
        )
        self.cache = cache if cache is not None else ReadCache(
            max_entries=self.settings.cache_max_entries,
            default_ttl=self.settings.cache_ttl,
        )
        self.maintenance = MaintenanceService(self, self.settings)
        self.legacy = False
        self._started = False
        self._closed = False
        self._start_lock = asyncio.Lock()

    @classmethod
    async def open(cls, config: Any = None, **kwargs) -> "KeyValueDatabase":
        """Construct a handle and finish initialization before returning it."""
        database = cls(config, **kwargs)
        await database.startup()
        return database

    async def __aenter__(self) -> "KeyValueDatabase":
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def db_type(self) -> str:
        return self.backend.kind

    @property
    def table_name(self) -> str:
        return self.backend.table_name

    @property
    def prefix(self) -> str:
        return f"{self.namespace}:"

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip(self, full_key: str) -> str:
        prefix = self.prefix
        return full_key[len(prefix):] if full_key.startswith(prefix) else full_key

    def _namespace_pattern(self, pattern: str = "%") -> str:
        return escape_like(self.prefix) + pattern

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def startup(self) -> None:
        """Connect, bind or create the table and start maintenance. Idempotent."""
        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            if self._closed:
                raise RuntimeError("Database handle is closed")
            try:
                await self.backend.connect()
                self.legacy = await self.backend.initialize()
                if self.legacy:
                    self.namespace = LEGACY_TABLE
            except Exception as e:
                logger.error("Database startup failed", backend=self.db_type, error=str(e))
                await self.backend.close()
                raise

            self._started = True
            await self.maintenance.start()
            logger.info(
                "Database initialized",
                backend=self.db_type,
                table=self.table_name,
                namespace=self.namespace,
                ttl_support=self.ttl_support
            )

    async def close(self) -> None:
        """Stop maintenance, let queued work settle and release the engine."""
        if self._closed:
            return
        self._closed = True
        if self._started:
            await self.maintenance.stop()
            await self.queue.join()
        await self.backend.close()
        self._started = False

    # ============================================================================
    # Queue dispatch
    # ============================================================================

    async def _execute(self, label: str, operation: Operation) -> Any:
        if not self._started:
            raise RuntimeError("Database not initialized")
        try:
            return await self.queue.run(operation, label)
        except SQLAlchemyError as e:
            raise BackendError(label, e) from e

    def _discard_expired(self, key: str) -> None:
        """Queue a detached delete of an expired key; failures are only logged."""
        full_key = self._full_key(key)
        try:
            future = self.queue.submit(lambda: self.backend.delete(full_key), "delete expired")
        except HeliactylDBError as e:
            logger.warning("Could not schedule expired key removal", key=key, error=str(e))
            return

        def _done(fut: asyncio.Future) -> None:
            if not fut.cancelled() and fut.exception() is not None:
                logger.warning("Expired key removal failed", key=key, error=str(fut.exception()))

        future.add_done_callback(_done)

    def _decode_live(self, full_key: str, raw: Optional[str]) -> Optional[Envelope]:
        """Decode a stored row, returning None when it is absent or expired."""
        if raw is None:
            return None
        envelope = Envelope.decode(full_key, raw)
        if self.ttl_support and envelope.is_expired():
            self._discard_expired(self._strip(full_key))
            return None
        return envelope

    # ============================================================================
    # Key-value operations
    # ============================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get a value. Returns None when missing or expired."""
        full_key = self._full_key(_require_key(key))
        raw = await self._execute("get value", lambda: self.backend.fetch_value(full_key))
        envelope = self._decode_live(full_key, raw)
        return envelope.value if envelope else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a value; ``ttl`` is in milliseconds and applies only with TTL support."""
        full_key = self._full_key(_require_key(key))
        data = Envelope.wrap(value, ttl, self.ttl_support).encode()
        await self._execute("set value", lambda: self.backend.upsert(full_key, data))
        self.cache.delete(full_key)

    async def delete(self, key: str) -> None:
        full_key = self._full_key(_require_key(key))
        await self._execute("delete value", lambda: self.backend.delete(full_key))
        self.cache.delete(full_key)

    async def has(self, key: str) -> bool:
        full_key = self._full_key(_require_key(key))
        if not self.ttl_support:
            return await self._execute("check key", lambda: self.backend.exists(full_key))

        raw = await self._execute("check key", lambda: self.backend.fetch_value(full_key))
        if raw is None:
            return False
        try:
            return self._decode_live(full_key, raw) is not None
        except CorruptValueError:
            return True

    async def clear(self) -> None:
        """Delete every key in this handle's namespace."""
        pattern = self._namespace_pattern()
        removed = await self._execute("clear values", lambda: self.backend.delete_like(pattern))
        self.cache.delete_pattern(self.prefix + "*")
        logger.info("Namespace cleared", namespace=self.namespace, count=removed)

    def _decode_rows(self, rows: List[tuple]) -> Dict[str, Any]:
        output: Dict[str, Any] = {}
        now = now_ms()
        for full_key, raw in rows:
            key = self._strip(full_key)
            try:
                envelope = Envelope.decode(full_key, raw)
            except CorruptValueError as e:
                logger.error("Skipping unreadable value", key=key, error=str(e))
                continue
            if self.ttl_support and envelope.is_expired(now):
                continue
            output[key] = envelope.value
        return output

    async def get_all(self) -> Dict[str, Any]:
        """Get every live key-value pair in the namespace."""
        pattern = self._namespace_pattern()
        rows = await self._execute("get all values", lambda: self.backend.fetch_rows(pattern))
        return self._decode_rows(rows)

    async def search(self, pattern: str) -> List[str]:
        """Find logical keys matching a SQL LIKE pattern (``%`` and ``_``)."""
        full_pattern = self._namespace_pattern(pattern)
        if not self.ttl_support:
            keys = await self._execute("search keys", lambda: self.backend.search_keys(full_pattern))
            return [self._strip(k) for k in keys]

        rows = await self._execute("search keys", lambda: self.backend.fetch_rows(full_pattern))
        return list(self._decode_rows(rows))

    async def increment(self, key: str, amount: float = 1) -> float:
        """Add ``amount`` to a numeric value, treating a missing value as 0.

        Read and write are two separate queue turns, so concurrent increments
        of the same key can lose updates.
        """
        current = await self.get(key) or 0
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise NonNumericValueError(key, current)
        new_value = current + amount
        await self.set(key, new_value)
        return new_value

    async def decrement(self, key: str, amount: float = 1) -> float:
        return await self.increment(key, -amount)

    async def set_multiple(self, entries: Mapping[str, Any], ttl: Optional[int] = None) -> None:
        """Write several entries in one transaction; all or nothing."""
        batch = [
            (self._full_key(_require_key(key)), Envelope.wrap(value, ttl, self.ttl_support))
            for key, value in entries.items()
        ]
        if not batch:
            return
        await self._execute("set multiple values", lambda: self.backend.write_batch(batch))
        for full_key, _ in batch:
            self.cache.delete(full_key)

    async def cleanup_expired(self) -> int:
        """Delete every expired row with one backend-native statement."""
        if not self.ttl_support:
            return 0
        now = now_ms()
        return await self._execute("cleanup expired", lambda: self.backend.delete_expired(now))

    # ============================================================================
    # Read cache
    # ============================================================================

    async def get_cached(self, key: str, ttl: int = DEFAULT_CACHE_TTL) -> Optional[Any]:
        """Get a value through the read cache; hits never touch storage."""
        cache_key = self._full_key(_require_key(key))
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        value = await self.get(key)
        if value is not None:
            self.cache.set(cache_key, value, ttl)
        return value

    async def set_cached(self, key: str, value: Any, ttl: int = DEFAULT_CACHE_TTL) -> None:
        """Write through to storage, then refresh the cached copy."""
        await self.set(key, value)
        self.cache.set(self._full_key(key), value, ttl)

    def clear_cache(self, pattern: str) -> None:
        """Evict one key, or every key matching a ``*`` pattern, from the read cache."""
        if "*" in pattern:
            self.cache.delete_pattern(self._full_key(pattern))
        else:
            self.cache.delete(self._full_key(pattern))

    # ============================================================================
    # Diagnostics
    # ============================================================================

    async def ping(self) -> None:
        """Round-trip a trivial query through the queue."""
        await self._execute("ping", self.backend.ping)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.queue.stats
        return {
            "backend": self.db_type,
            "table": self.table_name,
            "namespace": self.namespace,
            "legacy": self.legacy,
            "ttl_support": self.ttl_support,
            "queue_length": len(self.queue),
            "max_queue_size": self.queue.max_size,
            "processing": self.queue.is_processing,
            "operation_count": stats.operation_count,
            "average_operation_time_ms": round(stats.average_operation_time, 2),
            "cache_size": len(self.cache),
        }
