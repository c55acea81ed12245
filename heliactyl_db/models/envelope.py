"""Stored value envelope.

Every value is persisted as ``{"value": <payload>, "expires": <epoch ms>}``
with ``expires`` omitted when the entry never expires. The same layout is used
by legacy ``keyv`` tables, so those rows decode without migration.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Optional

from heliactyl_db.core.exceptions import CorruptValueError, SerializationError


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Envelope:
    value: Any
    expires: Optional[int] = None

    @classmethod
    def wrap(cls, value: Any, ttl: Optional[int] = None, ttl_support: bool = False) -> "Envelope":
        """Build an envelope, stamping an expiry only when TTL is enforced."""
        expires = now_ms() + int(ttl) if ttl_support and ttl else None
        return cls(value=value, expires=expires)

    def encode(self) -> str:
        data = {"value": self.value}
        if self.expires is not None:
            data["expires"] = self.expires
        try:
            return json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Value is not JSON serializable: {e}") from e

    @classmethod
    def decode(cls, key: str, raw: str) -> "Envelope":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorruptValueError(key, str(e)) from e
        if not isinstance(data, dict):
            raise CorruptValueError(key, f"expected an object, got {type(data).__name__}")
        expires = data.get("expires")
        if expires is not None and not isinstance(expires, (int, float)):
            raise CorruptValueError(key, "expires must be a number")
        return cls(value=data.get("value"), expires=expires)

    def is_expired(self, at: Optional[int] = None) -> bool:
        if self.expires is None:
            return False
        return self.expires < (now_ms() if at is None else at)
