"""
Storage adapters for the key-value table.

Two engines share one contract:
- SQLite: embedded single file, WAL journaling (default, bare paths)
- PostgreSQL: pooled networked server, CockroachDB compatible

Usage:
    backend = select_backend("sqlite://data/heliactyl.db", settings)
    await backend.connect()
    legacy = await backend.initialize()
    await backend.upsert("heliactyl:user:1", '{"value":1}')

Statements are written once with named binds; aiosqlite renders them as
positional ``?`` and asyncpg as numbered ``$n`` placeholders.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from heliactyl_db.core.config import Settings
from heliactyl_db.core.exceptions import DatabaseConfigError
from heliactyl_db.core.logging import get_logger, quiet_driver_loggers
from heliactyl_db.models.entry import DEFAULT_TABLE, LEGACY_TABLE, KeyValueEntry
from heliactyl_db.models.envelope import Envelope

logger = get_logger(__name__)

SQLITE = "sqlite"
POSTGRESQL = "postgresql"

POSTGRES_SCHEMES = ("postgresql://", "postgres://")
SQLITE_SCHEME = "sqlite://"


def resolve_url(config: Any) -> str:
    """Extract the connection string from a string, mapping or object with ``url``."""
    if not config:
        raise DatabaseConfigError("Database path is required")

    if isinstance(config, str):
        url = config
    elif isinstance(config, Mapping):
        url = config.get("url")
    else:
        url = getattr(config, "url", None)

    if not isinstance(url, str) or not url.strip():
        raise DatabaseConfigError(
            "Database path must be a string or an object with a url property"
        )
    return url.strip()


def classify_url(url: str) -> str:
    """Return the backend kind for a connection string."""
    if url.startswith(POSTGRES_SCHEMES):
        return POSTGRESQL
    if url.startswith(SQLITE_SCHEME) or "://" not in url:
        return SQLITE
    raise DatabaseConfigError(
        f"Unsupported database type: {url}. Use sqlite:// or postgresql://"
    )


class StorageBackend(ABC):
    """Abstract base for key-value storage engines.

    Subclasses provide the engine and the statements whose syntax differs
    between dialects; everything else is shared.
    """

    kind: str = ""
    upsert_sql: str = ""
    delete_expired_sql: str = ""
    legacy_probe_sql: str = ""

    def __init__(self, url: str, settings: Settings):
        self.url = url
        self.settings = settings
        self.table_name = DEFAULT_TABLE
        self.engine: Optional[AsyncEngine] = None

    @abstractmethod
    def _create_engine(self) -> AsyncEngine:
        """Build the async engine. No I/O happens here."""

    @property
    def _engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("Database not connected")
        return self.engine

    def _sql(self, template: str):
        return text(template.format(table=self.table_name))

    async def connect(self) -> None:
        """Create the engine and verify the server answers."""
        if self.engine is not None:
            return
        quiet_driver_loggers()
        self.engine = self._create_engine()
        await self.ping()
        logger.info("Database connected", backend=self.kind)

    async def initialize(self) -> bool:
        """Bind the legacy table if present, otherwise create the primary one.

        Returns True when a legacy table was found and bound.
        """
        async with self._engine.connect() as conn:
            result = await conn.execute(text(self.legacy_probe_sql), {"name": LEGACY_TABLE})
            legacy = result.first() is not None

        if legacy:
            logger.info(
                "Using legacy compatibility mode - found existing keyv table",
                backend=self.kind
            )
            self.table_name = LEGACY_TABLE
            return True

        # Table and index are created together or not at all
        async with self._engine.begin() as conn:
            await conn.run_sync(
                SQLModel.metadata.create_all,
                tables=[KeyValueEntry.__table__]
            )
        logger.info("Database table initialized", backend=self.kind, table=self.table_name)
        return False

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def fetch_value(self, key: str) -> Optional[str]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                self._sql("SELECT value FROM {table} WHERE key = :key"),
                {"key": key}
            )
            return result.scalar_one_or_none()

    async def exists(self, key: str) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                self._sql("SELECT 1 FROM {table} WHERE key = :key"),
                {"key": key}
            )
            return result.first() is not None

    async def upsert(self, key: str, value: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(self._sql(self.upsert_sql), {"key": key, "value": value})

    async def delete(self, key: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                self._sql("DELETE FROM {table} WHERE key = :key"),
                {"key": key}
            )
            return result.rowcount

    async def delete_like(self, pattern: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                self._sql("DELETE FROM {table} WHERE key LIKE :pattern ESCAPE '\\'"),
                {"pattern": pattern}
            )
            return result.rowcount

    async def search_keys(self, pattern: str) -> List[str]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                self._sql("SELECT key FROM {table} WHERE key LIKE :pattern ESCAPE '\\'"),
                {"pattern": pattern}
            )
            return list(result.scalars().all())

    async def fetch_rows(self, pattern: str) -> List[Tuple[str, str]]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                self._sql("SELECT key, value FROM {table} WHERE key LIKE :pattern ESCAPE '\\'"),
                {"pattern": pattern}
            )
            return [(key, value) for key, value in result]

    async def write_batch(self, entries: Sequence[Tuple[str, Envelope]]) -> None:
        """Upsert every entry in one transaction; any failure rolls back all of them."""
        statement = self._sql(self.upsert_sql)
        async with self._engine.begin() as conn:
            for key, envelope in entries:
                await conn.execute(statement, {"key": key, "value": envelope.encode()})

    async def delete_expired(self, now: int) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(self._sql(self.delete_expired_sql), {"now": now})
            return result.rowcount

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database connections closed", backend=self.kind)


class SQLiteBackend(StorageBackend):
    """Embedded single-file database opened in WAL mode."""

    kind = SQLITE
    upsert_sql = "INSERT OR REPLACE INTO {table} (key, value) VALUES (:key, :value)"
    # Rows that are not valid JSON, or carry no numeric expiry, never match
    delete_expired_sql = (
        "DELETE FROM {table} WHERE CASE WHEN json_valid(value) THEN "
        "CASE WHEN json_type(value, '$.expires') IN ('integer', 'real') "
        "THEN json_extract(value, '$.expires') END "
        "END < :now"
    )
    legacy_probe_sql = "SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"

    @property
    def path(self) -> Path:
        raw = self.url[len(SQLITE_SCHEME):] if self.url.startswith(SQLITE_SCHEME) else self.url
        return Path(raw).expanduser().resolve()

    def _create_engine(self) -> AsyncEngine:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            echo=self.settings.database_echo,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            # The driver only opens transactions before DML; BEGIN is emitted below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            # Match PostgreSQL LIKE semantics so namespaces are case sensitive
            cursor.execute("PRAGMA case_sensitive_like=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_transaction(conn):
            conn.exec_driver_sql("BEGIN")

        return engine


class PostgresBackend(StorageBackend):
    """Pooled PostgreSQL / CockroachDB connection."""

    kind = POSTGRESQL
    upsert_sql = (
        "INSERT INTO {table} (key, value) VALUES (:key, :value) "
        "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value"
    )
    # The regex keeps non-object text away from the jsonb cast
    delete_expired_sql = (
        "DELETE FROM {table} WHERE CASE WHEN value ~ '^\\s*\\{{.*\\}}\\s*$' THEN "
        "CASE WHEN jsonb_typeof(CAST(value AS jsonb) -> 'expires') = 'number' "
        "THEN CAST(CAST(value AS jsonb) ->> 'expires' AS NUMERIC) END "
        "END < :now"
    )
    legacy_probe_sql = (
        "SELECT table_name FROM information_schema.tables WHERE table_name = :name"
    )

    @property
    def driver_url(self) -> str:
        _, rest = self.url.split("://", 1)
        return f"postgresql+asyncpg://{rest}"

    def engine_options(self) -> Dict[str, Any]:
        return {
            "echo": self.settings.database_echo,
            "pool_size": self.settings.database_pool_size,
            "max_overflow": 0,
            "pool_recycle": self.settings.database_pool_recycle,
            "pool_pre_ping": True,
            "connect_args": {"timeout": self.settings.database_connect_timeout},
        }

    def _create_engine(self) -> AsyncEngine:
        return create_async_engine(self.driver_url, **self.engine_options())


def select_backend(config: Any, settings: Settings) -> StorageBackend:
    """
    Factory function to create the storage adapter for a connection descriptor.

    Args:
        config: Connection string, mapping with "url", or object with a url attribute
        settings: Settings carrying pool and echo options

    Returns:
        Unconnected StorageBackend instance

    Raises:
        DatabaseConfigError: descriptor missing, malformed or of an unknown scheme
    """
    url = resolve_url(config)
    kind = classify_url(url)
    if kind == POSTGRESQL:
        return PostgresBackend(url, settings)
    return SQLiteBackend(url, settings)
