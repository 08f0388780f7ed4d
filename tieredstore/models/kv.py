"""Expiring key-value pair."""

import gzip
import json
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class KV:
    """A key-value pair with optional expiration.

    Set either ``expires`` (Unix timestamp) or ``ttl`` (seconds from the
    moment of the put). ``ttl`` is a write-time convenience only and is
    never stored. An ``expires`` of None or 0 means the pair never expires.
    """
    key: str
    value: bytes = b""
    expires: Optional[float] = None
    ttl: Optional[float] = None

    def never_expires(self) -> bool:
        return not self.expires

    def is_expired(self, now: float) -> bool:
        return not self.never_expires() and self.expires <= now

    def remaining(self, now: float) -> Optional[float]:
        """Seconds left before expiry, None if the pair never expires."""
        if self.never_expires():
            return None
        return self.expires - now

    def compress(self) -> None:
        """Rewrite the value by compressing it with gzip."""
        self.value = gzip.compress(self.value)

    def decompress(self) -> None:
        """Rewrite the value by decompressing it with gzip."""
        self.value = gzip.decompress(self.value)

    def encode(self, obj: Any) -> None:
        """Set the value by JSON-encoding a Python object."""
        self.value = json.dumps(obj, separators=(",", ":")).encode("utf-8")

    def decode(self) -> Any:
        return json.loads(self.value.decode("utf-8"))
