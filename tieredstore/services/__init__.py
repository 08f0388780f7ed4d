"""Store services.

- EntityStore: cache-coherent read/write/delete and transactional modify
- KVStore: expiring key-value pairs
- KVGarbageCollector: time-boxed sweep of expired key-value rows
- Sequence: monotonic counters on the transaction primitive
"""

from .advisory import advisory
from .entity_store import EntityStore
from .kv_gc import KVGarbageCollector, SweepResult
from .kv_store import KVStore
from .sequence import Sequence, SequenceValue

__all__ = [
    "advisory",
    "EntityStore",
    "KVGarbageCollector",
    "SweepResult",
    "KVStore",
    "Sequence",
    "SequenceValue",
]
