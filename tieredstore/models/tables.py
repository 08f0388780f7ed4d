"""SQLModel tables backing the durable store."""

import time
from typing import Optional

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel


class EntityRow(SQLModel, table=True):
    """One durable row per entity, keyed by (kind, name).

    ``version`` is bumped on every write and is what transactional updates
    compare against to detect concurrent writers.
    """

    __tablename__ = "entities"

    kind: str = Field(primary_key=True, max_length=255)
    name: str = Field(primary_key=True, max_length=500)
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    version: int = Field(default=1)
    updated_at: float = Field(default_factory=time.time)


class KVRow(SQLModel, table=True):
    """Expiring key-value pair.

    The database has no native expiration; expired rows stay until the
    garbage collector removes them.
    """

    __tablename__ = "kvs"

    key: str = Field(primary_key=True, max_length=500)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp, None never expires
