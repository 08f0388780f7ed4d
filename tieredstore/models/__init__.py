"""Entity and row models."""

from .entity import (
    AfterRead,
    BeforeWrite,
    Cacheable,
    Capabilities,
    Entity,
    EntityKey,
    ResetForRetry,
)
from .kv import KV
from .tables import EntityRow, KVRow

__all__ = [
    "AfterRead",
    "BeforeWrite",
    "Cacheable",
    "Capabilities",
    "Entity",
    "EntityKey",
    "ResetForRetry",
    "KV",
    "EntityRow",
    "KVRow",
]
