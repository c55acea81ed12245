"""SQLModel table for key-value entries."""

from typing import Optional
from sqlalchemy import Column, Index, Integer, Text
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement
from sqlmodel import SQLModel, Field


DEFAULT_TABLE = "heliactyl"
LEGACY_TABLE = "keyv"


class epoch_seconds(FunctionElement):
    """Current time in integer epoch seconds, rendered per dialect."""

    type = Integer()
    inherit_cache = True
    name = "epoch_seconds"


@compiles(epoch_seconds, "sqlite")
def _sqlite_epoch_seconds(element, compiler, **kw):
    return "(CAST(strftime('%s', 'now') AS INTEGER))"


@compiles(epoch_seconds, "postgresql")
def _postgresql_epoch_seconds(element, compiler, **kw):
    return "CAST(EXTRACT(EPOCH FROM NOW()) AS INTEGER)"


class KeyValueEntry(SQLModel, table=True):
    """One namespaced key and its JSON envelope.

    ``key`` holds ``"{namespace}:{logical key}"`` so several namespaces can
    share the table. ``created_at`` is informational only.
    """

    __tablename__ = DEFAULT_TABLE
    __table_args__ = (Index("idx_heliactyl_key", "key"),)

    key: str = Field(primary_key=True, max_length=255)
    value: str = Field(sa_column=Column(Text, nullable=False))
    created_at: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, server_default=epoch_seconds())
    )
