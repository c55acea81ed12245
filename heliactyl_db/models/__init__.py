from heliactyl_db.models.entry import KeyValueEntry, DEFAULT_TABLE, LEGACY_TABLE
from heliactyl_db.models.envelope import Envelope, now_ms

__all__ = ["KeyValueEntry", "DEFAULT_TABLE", "LEGACY_TABLE", "Envelope", "now_ms"]
