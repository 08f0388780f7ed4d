"""Tests for the dependency injection container and service lifespan."""

from dependency_injector import providers

from tieredstore.core.config import Settings
from tieredstore.core.container import Container, lifespan
from tieredstore.core.logging import configure_logging
from tieredstore.core.serialization import GzipSerializer
from tieredstore.models.kv import KV
from tests.conftest import Counter


def make_container(tmp_path, **overrides):
    container = Container()
    container.settings.override(providers.Object(Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/container.db",
        _env_file=None,
        **overrides,
    )))
    return container


async def test_lifespan_wires_services(tmp_path):
    container = make_container(tmp_path, cache_key_prefix="app:")

    async with lifespan(container) as c:
        store = c.entity_store()
        await store.write(Counter(id="hits", value=2))
        assert (await store.read(Counter(id="hits"))).value == 2
        assert store.cache_key(Counter(id="hits")) == "app:counters:hits"

        kv_store = c.kv_store()
        await kv_store.put(KV(key="a", value=b"v"))
        assert (await kv_store.find("a")).value == b"v"

        assert c.entity_store() is store


async def test_lifespan_runs_sweeper(tmp_path):
    container = make_container(tmp_path)

    async with lifespan(container, run_gc=True) as c:
        assert c.kv_gc().running

    assert not container.kv_gc().running


def test_serializer_follows_settings(tmp_path):
    container = make_container(tmp_path, serializer="gzip+json")

    assert isinstance(container.entity_store().serializer, GzipSerializer)


def test_configure_logging(tmp_path):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
        log_format="console",
        log_file=str(tmp_path / "logs" / "store.log"),
        _env_file=None,
    )

    configure_logging(settings)

    assert (tmp_path / "logs").is_dir()
