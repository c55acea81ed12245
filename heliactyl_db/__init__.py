"""Async key-value store over SQLite or PostgreSQL with queuing and TTL."""

from heliactyl_db.core.cache import ReadCache
from heliactyl_db.core.config import Settings
from heliactyl_db.core.database import KeyValueDatabase
from heliactyl_db.core.exceptions import (
    BackendError,
    CorruptValueError,
    DatabaseConfigError,
    HeliactylDBError,
    InvalidKeyError,
    NonNumericValueError,
    OperationTimeoutError,
    QueueFullError,
    SerializationError,
)

__version__ = "0.5.0"

__all__ = [
    "KeyValueDatabase",
    "ReadCache",
    "Settings",
    "BackendError",
    "CorruptValueError",
    "DatabaseConfigError",
    "HeliactylDBError",
    "InvalidKeyError",
    "NonNumericValueError",
    "OperationTimeoutError",
    "QueueFullError",
    "SerializationError",
]
