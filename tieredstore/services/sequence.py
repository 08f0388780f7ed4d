"""Monotonic integer sequences stored as ordinary entities."""

from dataclasses import dataclass
from functools import partial
from typing import ClassVar, Optional, TYPE_CHECKING

from tieredstore.core.database import Transaction
from tieredstore.core.errors import NotFound, SequenceExhausted
from tieredstore.core.serialization import JsonSerializer, Serializer
from tieredstore.models.entity import Entity

if TYPE_CHECKING:
    from tieredstore.services.entity_store import EntityStore

INT64_MAX = 2 ** 63 - 1


class SequenceValue(Entity):
    """Current value of a named sequence."""

    kind: ClassVar[str] = "sequences"

    value: int = 0


@dataclass(frozen=True)
class Sequence:
    """A sequence of integers handed out atomically and in order.

    Attributes:
        name: Unique name of the sequence
        minimum: Smallest value the sequence may hold
        maximum: Largest value the sequence may hold
        start: First value, used when the sequence has never been advanced
        increment: Added to the current value to get the next one; may be negative
    """
    name: str
    minimum: int = 1
    maximum: int = INT64_MAX
    start: int = 1
    increment: int = 1

    def _shell(self) -> SequenceValue:
        return SequenceValue(id=self.name)

    async def maybe_current(self, txn: Transaction,
                            serializer: Optional[Serializer] = None) -> Optional[int]:
        """Current value, or None if the sequence has never been advanced.

        ``serializer`` must match the one the store writes with; JSON by default.
        """
        serializer = serializer or JsonSerializer()
        shell = self._shell()
        try:
            payload = await txn.get(shell.key())
        except NotFound:
            return None
        shell.load_payload(serializer.loads(payload))
        return shell.value

    async def current(self, txn: Transaction,
                      serializer: Optional[Serializer] = None) -> int:
        """Current value. Raises NotFound if the sequence has no value yet."""
        n = await self.maybe_current(txn, serializer)
        if n is None:
            raise NotFound(str(self._shell().key()))
        return n

    async def next(self, txn: Transaction,
                   serializer: Optional[Serializer] = None) -> int:
        """Advance the sequence and return the new value.

        Must run inside a transaction so concurrent callers never receive
        the same value.
        """
        serializer = serializer or JsonSerializer()
        n = await self.maybe_current(txn, serializer)
        n = self.start if n is None else n + self.increment
        if not self.minimum <= n <= self.maximum:
            raise SequenceExhausted(self.name, n)

        shell = self._shell()
        shell.value = n
        await txn.put(shell.key(), serializer.dumps(shell.to_payload()))
        return n

    async def next_value(self, store: "EntityStore") -> int:
        """Advance the sequence in its own transaction on ``store``."""
        return await store.run_in_transaction(partial(self.next, serializer=store.serializer))

    async def current_value(self, store: "EntityStore") -> int:
        """Current value read in its own transaction on ``store``."""
        return await store.run_in_transaction(partial(self.current, serializer=store.serializer))
