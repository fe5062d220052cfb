"""Validation, caching and conditional-request handling for tile requests."""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol
import hashlib
import json
import logging
import re

from ..etl.config import TileConfig
from .cache import TileCache, TileKey


LOGGER = logging.getLogger(__name__)

MVT_CONTENT_TYPE = "application/vnd.mapbox-vector-tile"
TILE_SUFFIXES = (".pbf", ".mvt")

_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_INT_PATTERN = re.compile(r"[0-9]+")

_CACHE_WRITER = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tile-cache-write")


class TileRequestError(ValueError):
    """Raised when a tile request is malformed; maps to HTTP 400."""


class TileGenerator(Protocol):
    def get_tile(self, z: int, x: int, y: int, day: Optional[date] = None) -> bytes: ...


@dataclass
class TileResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def fingerprint(data: bytes) -> str:
    """Strong ETag for ``data``."""

    return '"' + hashlib.sha1(data, usedforsecurity=False).hexdigest() + '"'


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value) if value is not None else ""
    if not _INT_PATTERN.fullmatch(text):
        raise TileRequestError(f"Invalid tile coordinate {name}: {value!r}")
    return int(text)


def parse_tile_coordinates(z: Any, x: Any, y: Any, *, max_zoom: int = 16) -> tuple[int, int, int]:
    """Validate ``z/x/y``; ``y`` may carry a ``.pbf`` or ``.mvt`` suffix."""

    if isinstance(y, str):
        for suffix in TILE_SUFFIXES:
            if y.endswith(suffix):
                y = y[: -len(suffix)]
                break
    zoom = _parse_int(z, "z")
    col = _parse_int(x, "x")
    row = _parse_int(y, "y")
    if not 0 <= zoom <= max_zoom:
        raise TileRequestError(f"Zoom level must be between 0 and {max_zoom}")
    limit = 1 << zoom
    if not (0 <= col < limit and 0 <= row < limit):
        raise TileRequestError("Tile coordinates out of range")
    return zoom, col, row


def parse_tile_date(value: Optional[str], *, today: Callable[[], date] | None = None) -> date:
    """Strict ``YYYY-MM-DD`` calendar date; ``None`` or blank means today."""

    if value is None or value == "":
        return (today or _utc_today)()
    if not _DATE_PATTERN.fullmatch(value):
        raise TileRequestError("Invalid date format. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise TileRequestError("Invalid date format. Use YYYY-MM-DD") from exc


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class TileRequestHandler:
    """Serve ``z/x/y?date=`` tiles from cache, falling back to the generator.

    Empty tiles are returned but never cached.  A freshly generated tile is
    handed to a background writer after the response has been built; a failed
    write is logged and otherwise ignored.  Concurrent misses on one key may
    both generate and both write, and the last write wins.
    """

    def __init__(
        self,
        generator: TileGenerator,
        cache: TileCache,
        config: TileConfig | None = None,
        *,
        executor: Executor | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self.generator = generator
        self.cache = cache
        self.config = config or TileConfig()
        self.executor = executor or _CACHE_WRITER
        self.today = today

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            "Content-Type": MVT_CONTENT_TYPE,
            "Cache-Control": self.config.cache_control,
        }
        headers.update(extra)
        return headers

    def handle(
        self,
        z: Any,
        x: Any,
        y: Any,
        *,
        date: Optional[str] = None,
        if_none_match: Optional[str] = None,
    ) -> TileResponse:
        try:
            zoom, col, row = parse_tile_coordinates(z, x, y, max_zoom=self.config.max_zoom)
            day = parse_tile_date(date, today=self.today)
        except TileRequestError as exc:
            return TileResponse(400, {"Content-Type": "text/plain; charset=utf-8"}, str(exc).encode("utf-8"))

        key = TileKey(self.config.layer, zoom, col, row, day)
        body = self._lookup(key)
        fresh = body is None
        if fresh:
            try:
                body = self.generator.get_tile(zoom, col, row, day)
            except Exception as exc:
                LOGGER.exception("Tile generation failed for %s/%s/%s date=%s", zoom, col, row, day)
                payload = json.dumps({"error": str(exc)}).encode("utf-8")
                return TileResponse(500, {"Content-Type": "application/json"}, payload)
            if not body:
                return TileResponse(200, self._headers(**{"X-Tile-Cache": "MISS"}), b"")

        etag = fingerprint(body)
        headers = self._headers(ETag=etag, **{"X-Tile-Cache": "MISS" if fresh else "HIT"})
        if etag_matches(if_none_match, etag):
            headers.pop("Content-Type")
            response = TileResponse(304, headers, b"")
        else:
            response = TileResponse(200, headers, body)

        if fresh:
            self._schedule_write(key, body)
        return response

    def _lookup(self, key: TileKey) -> Optional[bytes]:
        try:
            return self.cache.get(key)
        except Exception:
            LOGGER.warning("Tile cache read failed for %s; regenerating", key, exc_info=True)
            return None

    def _schedule_write(self, key: TileKey, body: bytes) -> None:
        try:
            self.executor.submit(self._write, key, body)
        except RuntimeError:
            LOGGER.warning("Tile cache writer unavailable; dropping write for %s", key)

    def _write(self, key: TileKey, body: bytes) -> None:
        try:
            self.cache.put(key, body)
        except Exception:
            LOGGER.warning("Tile cache write failed for %s", key, exc_info=True)


__all__ = [
    "MVT_CONTENT_TYPE",
    "TileRequestError",
    "TileRequestHandler",
    "TileResponse",
    "etag_matches",
    "fingerprint",
    "parse_tile_coordinates",
    "parse_tile_date",
]
