"""Tests for transactional sequences."""

import asyncio

import pytest

from tieredstore.core.errors import NotFound, SequenceExhausted
from tieredstore.core.serialization import GzipSerializer
from tieredstore.services.entity_store import EntityStore
from tieredstore.services.sequence import Sequence, SequenceValue


async def test_first_value_is_start(store):
    seq = Sequence("orders", start=100)

    assert await seq.next_value(store) == 100
    assert await seq.next_value(store) == 101


async def test_current_before_first_advance(store):
    seq = Sequence("orders")

    assert await store.run_in_transaction(seq.maybe_current) is None
    with pytest.raises(NotFound):
        await store.run_in_transaction(seq.current)


async def test_current_after_advance(store):
    seq = Sequence("orders")
    await seq.next_value(store)
    await seq.next_value(store)

    assert await store.run_in_transaction(seq.current) == 2


async def test_negative_increment(store):
    seq = Sequence("countdown", minimum=0, maximum=10, start=10, increment=-5)

    assert [await seq.next_value(store) for _ in range(3)] == [10, 5, 0]
    with pytest.raises(SequenceExhausted) as exc_info:
        await seq.next_value(store)
    assert exc_info.value.value == -5


async def test_maximum_is_enforced(store):
    seq = Sequence("tiny", maximum=2)
    await seq.next_value(store)
    await seq.next_value(store)

    with pytest.raises(SequenceExhausted):
        await seq.next_value(store)
    assert await store.run_in_transaction(seq.current) == 2


async def test_start_outside_bounds(store):
    with pytest.raises(SequenceExhausted):
        await Sequence("bad", minimum=5, start=1).next_value(store)


async def test_sequences_are_independent(store):
    a, b = Sequence("a"), Sequence("b")
    await a.next_value(store)
    await a.next_value(store)

    assert await b.next_value(store) == 1


async def test_concurrent_callers_get_distinct_values(database, cache):
    store = EntityStore(database, cache, transaction_attempts=10)
    seq = Sequence("tickets")

    values = await asyncio.gather(*(seq.next_value(store) for _ in range(4)))

    assert sorted(values) == [1, 2, 3, 4]


async def test_sequence_rows_use_the_store_serializer(database, cache):
    store = EntityStore(database, cache, serializer=GzipSerializer())
    seq = Sequence("orders")
    await seq.next_value(store)
    await seq.next_value(store)

    assert await seq.current_value(store) == 2
    assert (await store.read(SequenceValue(id="orders"))).value == 2

    await store.modify(SequenceValue(id="orders"), lambda s: setattr(s, "value", 10))
    assert await seq.next_value(store) == 11
