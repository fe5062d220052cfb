"""Vector tile generation for permits using PostGIS ``ST_AsMVT``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from ..etl.postgres import PostgresClient


# (max zoom of band, snapping grid in EPSG:3857 metres); above the last band
# points keep their exact position.
SNAP_BANDS: tuple[tuple[int, float], ...] = (
    (6, 64.0),
    (10, 8.0),
)

TILE_ATTRIBUTES: tuple[str, ...] = (
    "id",
    "permit_type",
    "permit_status",
    "permit_issuance_date",
    "borough",
)

TILE_SQL = """
    WITH bounds AS (
        SELECT ST_TileEnvelope(%(z)s, %(x)s, %(y)s) AS geom
    ), src AS (
        SELECT
            p.id,
            p.permit_type,
            p.permit_status,
            to_char(p.permit_issuance_date AT TIME ZONE 'UTC', 'YYYY-MM-DD') AS permit_issuance_date,
            p.borough,
            ST_Transform(p.geom, 3857) AS g3857
        FROM dob_permits AS p
        CROSS JOIN bounds
        WHERE p.geom IS NOT NULL
          AND p.geom && ST_Transform(bounds.geom, 4326)
          AND (
                %(day)s::date IS NULL
                OR (
                    p.permit_issuance_date IS NOT NULL
                    AND (p.permit_issuance_date AT TIME ZONE 'UTC')::date = %(day)s::date
                )
          )
    ), features AS (
        SELECT
            src.id,
            src.permit_type,
            src.permit_status,
            src.permit_issuance_date,
            src.borough,
            ST_AsMVTGeom(
                CASE
                    WHEN %(grid)s::double precision IS NULL THEN src.g3857
                    ELSE ST_SnapToGrid(src.g3857, %(grid)s::double precision)
                END,
                bounds.geom,
                %(extent)s,
                %(buffer)s,
                true
            ) AS geom
        FROM src
        CROSS JOIN bounds
        WHERE ST_Intersects(src.g3857, bounds.geom)
    )
    SELECT ST_AsMVT(features, %(layer)s, %(extent)s, 'geom' ORDER BY features.id)
    FROM features
    WHERE features.geom IS NOT NULL
"""


def snap_grid_size(z: int) -> Optional[float]:
    """Return the snapping grid for zoom ``z``, or ``None`` for exact positions."""

    for max_zoom, grid in SNAP_BANDS:
        if z <= max_zoom:
            return grid
    return None


@dataclass
class TileService:
    """Read-only tile generator; identical inputs give byte-identical tiles."""

    pg: PostgresClient
    layer: str = "permits"
    extent: int = 4096
    buffer: int = 256

    def query_params(self, z: int, x: int, y: int, day: Optional[date] = None) -> Dict[str, Any]:
        return {
            "z": z,
            "x": x,
            "y": y,
            "day": day,
            "grid": snap_grid_size(z),
            "extent": self.extent,
            "buffer": self.buffer,
            "layer": self.layer,
        }

    def get_tile(self, z: int, x: int, y: int, day: Optional[date] = None) -> bytes:
        """Encode the permits in tile ``z/x/y`` issued on ``day``.

        An empty ``bytes`` object means the tile has no features.
        """

        row = self.pg.fetch_one(TILE_SQL, self.query_params(z, x, y, day))
        if not row or row[0] is None:
            return b""
        return bytes(row[0])


__all__ = ["SNAP_BANDS", "TILE_ATTRIBUTES", "TileService", "snap_grid_size"]
