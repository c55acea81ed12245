"""Database exception hierarchy."""


class HeliactylDBError(Exception):
    """Base exception for all database errors."""


class DatabaseConfigError(HeliactylDBError, ValueError):
    """Missing, malformed or unsupported connection descriptor."""


class InvalidKeyError(HeliactylDBError, ValueError):
    """Key is empty or not a string."""

    def __init__(self, key=None):
        self.key = key
        super().__init__("Key is required and must be a non-empty string")


class NonNumericValueError(HeliactylDBError, TypeError):
    """Stored value cannot be incremented."""

    def __init__(self, key: str, value):
        self.key = key
        self.value = value
        super().__init__(f"Value for '{key}' must be a number to increment, got {type(value).__name__}")


class SerializationError(HeliactylDBError, TypeError):
    """Value cannot be encoded as JSON."""


class CorruptValueError(HeliactylDBError):
    """Stored envelope cannot be decoded. Distinct from a missing key."""

    def __init__(self, key: str, reason: str):
        self.key = key
        super().__init__(f"Failed to parse stored value for '{key}': {reason}")


class QueueFullError(HeliactylDBError):
    """Operation queue is at capacity; nothing was executed."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Database queue is full ({max_size} pending operations)")


class OperationTimeoutError(HeliactylDBError, TimeoutError):
    """The caller stopped waiting. The backend call may still complete."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"Database operation '{label}' timed out after {timeout:g}s")


class BackendError(HeliactylDBError):
    """Storage engine failure (connection, constraint, transaction)."""

    def __init__(self, operation: str, error: Exception):
        self.operation = operation
        super().__init__(f"Failed to {operation}: {error}")
