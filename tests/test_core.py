"""Tests for settings, serializers, the cache tier and entity identity."""

import asyncio
from typing import ClassVar

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tieredstore.core.cache import CacheService
from tieredstore.core.config import Settings, load_settings
from tieredstore.core.errors import CacheFault, ConfigurationError, FieldMismatch
from tieredstore.core.serialization import GzipSerializer, JsonSerializer, create_serializer
from tieredstore.models.entity import Capabilities, Entity, EntityKey
from tieredstore.services.advisory import advisory
from tests.conftest import Counter, Ledger, Note


class TestSettings:

    def test_defaults(self, settings):
        assert settings.transaction_attempts == 3
        assert settings.kv_sweep_batch_size == 400
        assert settings.kv_sweep_leeway == 86400
        assert settings.serializer == "json"

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRANSACTION_ATTEMPTS", "7")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = load_settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
                                 _env_file=None)

        assert settings.transaction_attempts == 7
        assert settings.log_level == "DEBUG"

    def test_sqlite_directory_is_created(self, tmp_path):
        Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/nested/dir/x.db", _env_file=None)
        assert (tmp_path / "nested" / "dir").is_dir()

    def test_redis_enabled_without_url(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
                          redis_enabled=True, redis_url=None, _env_file=None)

    def test_invalid_values(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
                          transaction_attempts=0, _env_file=None)
        with pytest.raises(ConfigurationError):
            load_settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
                          log_level="chatty", _env_file=None)


class TestSerializers:

    def test_json_is_compact(self):
        assert JsonSerializer().dumps({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'

    def test_gzip_wraps_json(self):
        serializer = GzipSerializer()
        payload = serializer.dumps({"text": "abc" * 100})

        assert payload[:2] == b"\x1f\x8b"
        assert serializer.loads(payload) == {"text": "abc" * 100}

    def test_factory(self):
        assert isinstance(create_serializer("json"), JsonSerializer)
        assert isinstance(create_serializer("gzip+json"), GzipSerializer)
        with pytest.raises(ValueError):
            create_serializer("pickle")


class TestEntity:

    def test_key(self):
        key = Counter(id="hits").key()
        assert key == EntityKey("counters", "hits")
        assert str(key) == "counters:hits"

    def test_key_validation(self):
        with pytest.raises(ValueError):
            Counter().key()
        with pytest.raises(ValueError):
            EntityKey("bad:kind", "x")
        with pytest.raises(ValueError):
            EntityKey("", "x")

    def test_string_id_override(self):
        class Pair(Entity):
            kind: ClassVar[str] = "pairs"
            left: str = ""
            right: str = ""

            def string_id(self) -> str:
                return f"{self.left}/{self.right}"

        assert str(Pair(left="a", right="b").key()) == "pairs:a/b"

    def test_capabilities(self):
        assert Counter(id="c").capabilities() == Capabilities(cacheable=True)
        assert Note(id="n").capabilities() == Capabilities(before_write=True, after_read=True)
        assert Ledger(id="l").capabilities() == Capabilities(reset_for_retry=True, cacheable=True)

    def test_ttl(self):
        assert Counter(id="c").ttl() == 300
        assert Note(id="n").ttl() == 0

    def test_load_payload_reports_unknown_fields_after_loading(self):
        counter = Counter(id="c")

        with pytest.raises(FieldMismatch) as exc_info:
            counter.load_payload({"id": "c", "value": 3, "zeta": 1, "alpha": 2})

        assert counter.value == 3
        assert exc_info.value.fields == ["alpha", "zeta"]

    def test_load_payload_keeps_missing_fields(self):
        note = Note(id="n", text="kept")
        note.load_payload({"length": 4})

        assert note.text == "kept"
        assert note.length == 4


class TestCacheService:

    async def test_memory_ttl_uses_clock(self, cache, clock):
        await cache.set("k", b"v", ttl=5)
        assert await cache.get("k") == b"v"

        clock.advance(5)
        assert await cache.get("k") is None

    async def test_zero_ttl_never_expires(self, cache, clock):
        await cache.set("k", b"v", ttl=0)
        clock.advance(1e9)
        assert await cache.get("k") == b"v"

    async def test_delete_reports_presence(self, cache):
        await cache.set("k", b"v")
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False

    async def test_redis_errors_become_cache_faults(self, settings, mocker):
        cache = CacheService(settings)
        cache.use_redis = True
        cache.redis = mocker.AsyncMock()
        cache.redis.get.side_effect = RedisConnectionError("refused")
        cache.redis.delete.side_effect = asyncio.TimeoutError()

        with pytest.raises(CacheFault):
            await cache.get("k")
        with pytest.raises(CacheFault):
            await cache.delete("k")

    async def test_redis_set_uses_millisecond_ttl(self, settings, mocker):
        cache = CacheService(settings)
        cache.use_redis = True
        cache.redis = mocker.AsyncMock()

        await cache.set("k", b"v", ttl=0.25)

        cache.redis.set.assert_awaited_once_with("k", b"v", px=250)

    async def test_unreachable_redis_falls_back_to_memory(self, tmp_path, mocker):
        settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/x.db",
                            redis_enabled=True, redis_url="redis://localhost:1/0",
                            _env_file=None)
        client = mocker.AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")
        mocker.patch("tieredstore.core.cache.redis.from_url", return_value=client)

        cache = CacheService(settings)
        await cache.startup()

        assert not cache.is_redis_available()
        await cache.set("k", b"v")
        assert await cache.get("k") == b"v"


class TestAdvisory:

    async def test_failure_is_logged_not_raised(self):
        async def fail():
            raise CacheFault("down")

        await advisory("populate_cache", fail(), cache_key="k")

    async def test_cancellation_propagates(self):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await advisory("populate_cache", cancelled())
