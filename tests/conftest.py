"""Pytest configuration and fixtures for tieredstore tests."""

from typing import ClassVar, List

import pytest
from pydantic import PrivateAttr

from tieredstore.core.cache import CacheService
from tieredstore.core.config import Settings
from tieredstore.core.database import Database
from tieredstore.models.entity import Entity
from tieredstore.services.entity_store import EntityStore
from tieredstore.services.kv_store import KVStore


class FakeClock:
    """Controllable Unix clock shared by the cache tier and the KV store."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Counter(Entity):
    """Cacheable entity with a single counter."""

    kind: ClassVar[str] = "counters"

    value: int = 0

    def cache_ttl(self) -> float:
        return 300


class Note(Entity):
    """Uncached entity with derived fields."""

    kind: ClassVar[str] = "notes"

    text: str = ""
    length: int = 0
    title: str = ""

    def before_write(self) -> None:
        self.length = len(self.text)

    def after_read(self) -> None:
        self.title = self.text.split("\n", 1)[0]


class Badge(Entity):
    """Cacheable entity with a field derived after every read."""

    kind: ClassVar[str] = "badges"

    label: str = ""
    display: str = ""

    def cache_ttl(self) -> float:
        return 120

    def after_read(self) -> None:
        self.display = self.label.upper()


class Ledger(Entity):
    """Cacheable entity that tracks how many transaction attempts it saw."""

    kind: ClassVar[str] = "ledgers"

    entries: List[str] = []
    _attempts: int = PrivateAttr(default=0)

    def cache_ttl(self) -> float:
        return 60

    def reset_for_retry(self) -> None:
        self._attempts += 1
        self.entries = []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/store.db",
        redis_enabled=False,
        _env_file=None,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings, clock):
    service = CacheService(settings, clock=clock)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
def store(database, cache):
    return EntityStore(database, cache)


@pytest.fixture
def kv_store(database, cache, clock):
    return KVStore(database, cache, clock=clock)
