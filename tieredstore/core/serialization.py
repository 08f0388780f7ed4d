"""Payload serializers shared by the durable store and the cache tier."""

import gzip
import json
from typing import Any, Dict, Optional, Protocol


class Serializer(Protocol):
    """Turns an entity's cacheable representation into bytes and back."""

    def dumps(self, data: Dict[str, Any]) -> bytes:
        ...

    def loads(self, payload: bytes) -> Dict[str, Any]:
        ...


class JsonSerializer:
    """UTF-8 JSON payloads."""

    def dumps(self, data: Dict[str, Any]) -> bytes:
        return json.dumps(data, separators=(",", ":"), default=str).encode("utf-8")

    def loads(self, payload: bytes) -> Dict[str, Any]:
        return json.loads(payload.decode("utf-8"))


class GzipSerializer:
    """Wraps another serializer and gzip-compresses its output.

    Worth it for large, repetitive payloads; small ones get bigger.
    """

    def __init__(self, inner: Optional[Serializer] = None, compresslevel: int = 6):
        self.inner = inner or JsonSerializer()
        self.compresslevel = compresslevel

    def dumps(self, data: Dict[str, Any]) -> bytes:
        return gzip.compress(self.inner.dumps(data), compresslevel=self.compresslevel)

    def loads(self, payload: bytes) -> Dict[str, Any]:
        return self.inner.loads(gzip.decompress(payload))


def create_serializer(name: str = "json") -> Serializer:
    """Factory for the configured payload format."""
    if name == "json":
        return JsonSerializer()
    if name == "gzip+json":
        return GzipSerializer(JsonSerializer())
    raise ValueError(f"Unknown serializer: {name}")
