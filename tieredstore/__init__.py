"""Cache-coherent entity persistence over a durable SQL store and a Redis cache tier."""

from tieredstore.core.cache import CacheService
from tieredstore.core.config import Settings, load_settings
from tieredstore.core.database import Database, Transaction
from tieredstore.core.errors import (
    CacheFault,
    CacheInvalidationError,
    ConfigurationError,
    FieldMismatch,
    NotFound,
    SequenceExhausted,
    StorageFault,
    StoreError,
    TransactionConflict,
)
from tieredstore.models import KV, Entity, EntityKey
from tieredstore.services import (
    EntityStore,
    KVGarbageCollector,
    KVStore,
    Sequence,
    SweepResult,
)

__version__ = "0.1.0"

__all__ = [
    "CacheService",
    "Settings",
    "load_settings",
    "Database",
    "Transaction",
    "CacheFault",
    "CacheInvalidationError",
    "ConfigurationError",
    "FieldMismatch",
    "NotFound",
    "SequenceExhausted",
    "StorageFault",
    "StoreError",
    "TransactionConflict",
    "KV",
    "Entity",
    "EntityKey",
    "EntityStore",
    "KVGarbageCollector",
    "KVStore",
    "Sequence",
    "SweepResult",
]
