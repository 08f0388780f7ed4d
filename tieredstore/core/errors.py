"""Store exception hierarchy.

Callers see a small closed set of outcomes:

- NotFound: no such entity or key
- CacheFault: cache tier trouble, never fatal while the durable store can make progress
- StorageFault: durable store trouble, always fatal to the current operation
- anything raised by a caller's mutation function, passed through unchanged
"""


class StoreError(Exception):
    """Base exception for all store errors."""


class NotFound(StoreError):
    """The requested entity or key does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No such entity: {key}")


class FieldMismatch(StoreError):
    """Stored payload carries fields the entity class does not declare.

    Raised after every declared field has been loaded, so the caller may
    keep using the partially loaded entity.
    """

    def __init__(self, kind: str, fields):
        self.kind = kind
        self.fields = sorted(fields)
        super().__init__(f"[{kind}] stored fields not declared on entity: {', '.join(self.fields)}")


class CacheFault(StoreError):
    """Cache tier is unreachable or returned an error."""


class CacheInvalidationError(CacheFault):
    """A cache entry could not be invalidated after a durable change.

    ``committed`` is True when the durable write already happened, meaning
    the cache may serve the old value until its entry expires.
    """

    def __init__(self, cache_key: str, message: str, committed: bool = True):
        self.cache_key = cache_key
        self.committed = committed
        super().__init__(f"Failed to invalidate {cache_key}: {message}")


class StorageFault(StoreError):
    """Durable store is unreachable or returned an error."""


class TransactionConflict(StorageFault):
    """Transaction kept conflicting with concurrent writers until retries ran out."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Transaction failed after {attempts} attempts due to concurrent writes")


class ConfigurationError(StoreError):
    """Missing collaborator or invalid settings."""


class SequenceExhausted(StoreError):
    """The next sequence value would fall outside the sequence's bounds."""

    def __init__(self, name: str, value: int):
        self.name = name
        self.value = value
        super().__init__(f"Sequence {name} cannot advance to {value}: out of bounds")
