"""Read-through storage for generated tiles."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from ..etl.postgres import PostgresClient


DDL = """
CREATE TABLE IF NOT EXISTS mvt_cache (
    layer TEXT NOT NULL,
    z SMALLINT NOT NULL,
    x INTEGER NOT NULL,
    y INTEGER NOT NULL,
    date DATE NOT NULL,
    mvt BYTEA NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (layer, z, x, y, date)
)
"""

INDEX_DDL = "CREATE INDEX IF NOT EXISTS mvt_cache_updated_at_ix ON mvt_cache (updated_at)"


@dataclass(frozen=True)
class TileKey:
    layer: str
    z: int
    x: int
    y: int
    date: date

    def parts(self) -> tuple[str, ...]:
        return (self.layer, str(self.z), str(self.x), str(self.y), self.date.isoformat())


class TileCache(Protocol):
    def get(self, key: TileKey) -> Optional[bytes]: ...

    def put(self, key: TileKey, data: bytes) -> None: ...

    def sweep(self, max_age_days: int) -> int: ...


@dataclass
class PostgresTileCache:
    """Tile bytes kept in the ``mvt_cache`` table; regeneration overwrites."""

    pg: PostgresClient

    def get(self, key: TileKey) -> Optional[bytes]:
        row = self.pg.fetch_one(
            """
            SELECT mvt FROM mvt_cache
            WHERE layer = %s AND z = %s AND x = %s AND y = %s AND date = %s
            """,
            (key.layer, key.z, key.x, key.y, key.date),
        )
        if not row or row[0] is None:
            return None
        return bytes(row[0])

    def put(self, key: TileKey, data: bytes) -> None:
        self.pg.execute(
            """
            INSERT INTO mvt_cache (layer, z, x, y, date, mvt, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (layer, z, x, y, date)
            DO UPDATE SET mvt = EXCLUDED.mvt, updated_at = EXCLUDED.updated_at
            """,
            (key.layer, key.z, key.x, key.y, key.date, data),
        )

    def sweep(self, max_age_days: int = 7) -> int:
        """Delete entries older than ``max_age_days``; returns the number removed."""

        deleted = self.pg.execute(
            "DELETE FROM mvt_cache WHERE updated_at < NOW() - make_interval(days => %s)",
            (int(max_age_days),),
        )
        return deleted or 0


__all__ = ["DDL", "INDEX_DDL", "PostgresTileCache", "TileCache", "TileKey"]
