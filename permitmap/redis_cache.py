"""Redis-backed tile cache."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis

from .tiles.cache import TileKey


@dataclass
class RedisTileCache:
    """Same contract as the table-backed cache; Redis expiry does the sweeping."""

    url: str
    default_ttl_seconds: int = 7 * 24 * 3600
    namespace: str = "permitmap"

    def __post_init__(self) -> None:
        self._client = redis.from_url(self.url, decode_responses=False)

    def build_key(self, *parts: str) -> str:
        return ":".join([self.namespace, "tiles", *parts])

    def get(self, key: TileKey) -> Optional[bytes]:
        return self._client.get(self.build_key(*key.parts()))

    def put(self, key: TileKey, data: bytes, ttl: Optional[int] = None) -> None:
        self._client.set(self.build_key(*key.parts()), data, ex=ttl or self.default_ttl_seconds)

    def sweep(self, max_age_days: int = 7) -> int:  # noqa: ARG002 - entries expire on their own
        return 0


__all__ = ["RedisTileCache"]
