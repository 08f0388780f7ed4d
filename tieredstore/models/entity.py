"""Entity base class, identity and optional lifecycle capabilities.

An entity opts into lifecycle hooks simply by defining the method:

    class Counter(Entity):
        kind: ClassVar[str] = "counters"
        value: int = 0

        def cache_ttl(self) -> float:
            return 300

Capabilities are resolved once, when the subclass is created, and looked up
from the class afterwards.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Protocol, runtime_checkable

from pydantic import BaseModel

from tieredstore.core.errors import FieldMismatch


@dataclass(frozen=True)
class EntityKey:
    """Storage key derived from an entity's kind and string id."""
    kind: str
    name: str

    def __post_init__(self):
        if not self.kind or ":" in self.kind:
            raise ValueError(f"Invalid entity kind: {self.kind!r}")
        if not self.name:
            raise ValueError(f"Entity of kind {self.kind!r} has an empty id")

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


@runtime_checkable
class BeforeWrite(Protocol):
    """Recomputes derived fields before the entity is persisted."""

    def before_write(self) -> None:
        ...


@runtime_checkable
class AfterRead(Protocol):
    """Recomputes derived fields after the entity is loaded."""

    def after_read(self) -> None:
        ...


@runtime_checkable
class ResetForRetry(Protocol):
    """Clears accumulating fields before each transaction attempt."""

    def reset_for_retry(self) -> None:
        ...


@runtime_checkable
class Cacheable(Protocol):
    """Seconds the cache tier may hold this entity. Zero disables caching."""

    def cache_ttl(self) -> float:
        ...


@dataclass(frozen=True)
class Capabilities:
    """Which optional hooks an entity class implements."""
    before_write: bool = False
    after_read: bool = False
    reset_for_retry: bool = False
    cacheable: bool = False

    @classmethod
    def of(cls, entity_cls: type) -> "Capabilities":
        return cls(
            before_write=issubclass(entity_cls, BeforeWrite),
            after_read=issubclass(entity_cls, AfterRead),
            reset_for_retry=issubclass(entity_cls, ResetForRetry),
            cacheable=issubclass(entity_cls, Cacheable),
        )


class Entity(BaseModel):
    """Base class for records stored through the entity store.

    Subclasses set ``kind`` and either use the ``id`` field or override
    ``string_id`` to derive the identifier from other fields.
    """

    kind: ClassVar[str] = ""
    __capabilities__: ClassVar[Capabilities] = Capabilities()

    id: str = ""

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        cls.__capabilities__ = Capabilities.of(cls)

    def string_id(self) -> str:
        return self.id

    def key(self) -> EntityKey:
        return EntityKey(self.kind, self.string_id())

    def capabilities(self) -> Capabilities:
        return type(self).__capabilities__

    def ttl(self) -> float:
        """Cache TTL in seconds, 0 when the entity is not cacheable."""
        if not self.capabilities().cacheable:
            return 0
        return max(0, self.cache_ttl())

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def load_payload(self, data: Dict[str, Any]) -> None:
        """Load stored fields into this entity in place.

        Declared fields missing from ``data`` keep their current value.
        Raises FieldMismatch, after loading, if ``data`` has undeclared fields.
        """
        fields = type(self).model_fields
        known = {k: v for k, v in data.items() if k in fields}
        loaded = type(self).model_validate({**self.model_dump(), **known})
        for name in fields:
            setattr(self, name, getattr(loaded, name))

        unknown = set(data) - set(fields)
        if unknown:
            raise FieldMismatch(self.kind, unknown)
