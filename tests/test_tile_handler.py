from __future__ import annotations

from concurrent.futures import Future
from datetime import date
from typing import Dict, Optional

import pytest

from permitmap.etl.config import TileConfig
from permitmap.tiles.cache import TileKey
from permitmap.tiles.handler import (
    MVT_CONTENT_TYPE,
    TileRequestError,
    TileRequestHandler,
    etag_matches,
    fingerprint,
    parse_tile_coordinates,
    parse_tile_date,
)


TODAY = date(2024, 3, 15)
TILE = b"\x1a\x07permits"


class InlineExecutor:
    """Runs submitted work immediately so cache writes are observable."""

    def submit(self, fn, *args, **kwargs):
        future: Future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


class FakeGenerator:
    def __init__(self, tiles: Optional[Dict[tuple, bytes]] = None, default: bytes = TILE) -> None:
        self.tiles = tiles or {}
        self.default = default
        self.calls: list[tuple] = []
        self.error: Optional[Exception] = None

    def get_tile(self, z, x, y, day=None):
        self.calls.append((z, x, y, day))
        if self.error is not None:
            raise self.error
        return self.tiles.get((z, x, y, day), self.default)


class FakeCache:
    def __init__(self) -> None:
        self.entries: Dict[TileKey, bytes] = {}
        self.gets: list[TileKey] = []
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None

    def get(self, key):
        self.gets.append(key)
        if self.read_error is not None:
            raise self.read_error
        return self.entries.get(key)

    def put(self, key, data):
        if self.write_error is not None:
            raise self.write_error
        self.entries[key] = data

    def sweep(self, max_age_days):
        return 0


def _handler(generator=None, cache=None, **config):
    generator = generator or FakeGenerator()
    cache = cache or FakeCache()
    handler = TileRequestHandler(
        generator,
        cache,
        TileConfig(**config),
        executor=InlineExecutor(),
        today=lambda: TODAY,
    )
    return handler, generator, cache


def test_parse_tile_coordinates_strips_suffixes():
    assert parse_tile_coordinates("3", "2", "5.pbf") == (3, 2, 5)
    assert parse_tile_coordinates(3, 2, "5.mvt") == (3, 2, 5)
    assert parse_tile_coordinates("0", "0", "0") == (0, 0, 0)


@pytest.mark.parametrize(
    "z, x, y",
    [
        ("20", "0", "0"),
        ("-1", "0", "0"),
        ("a", "0", "0"),
        ("2", "4", "0"),
        ("2", "0", "4"),
        ("2", "1.5", "0"),
        ("2", "", "0"),
        ("1\n", "0", "0"),
        ("1", "\u0661", "0"),
        (" 1", "0", "0"),
        ("1", "0", "0\n.pbf"),
    ],
)
def test_parse_tile_coordinates_rejects_invalid(z, x, y):
    with pytest.raises(TileRequestError):
        parse_tile_coordinates(z, x, y, max_zoom=16)


def test_parse_tile_date():
    assert parse_tile_date(None, today=lambda: TODAY) == TODAY
    assert parse_tile_date("", today=lambda: TODAY) == TODAY
    assert parse_tile_date("2024-01-31", today=lambda: TODAY) == date(2024, 1, 31)
    for bad in ("2024-02-30", "2024-1-5", "01/05/2024", "tomorrow", "2024-01-31\n", "20240131", "\u0662024-01-31"):
        with pytest.raises(TileRequestError):
            parse_tile_date(bad, today=lambda: TODAY)


def test_etag_helpers():
    etag = fingerprint(TILE)
    assert etag.startswith('"') and etag.endswith('"')
    assert fingerprint(TILE) == etag
    assert fingerprint(TILE + b"x") != etag
    assert etag_matches(etag, etag)
    assert etag_matches(f'"other", W/{etag}', etag)
    assert etag_matches("*", etag)
    assert not etag_matches(None, etag)
    assert not etag_matches('"stale"', etag)


def test_out_of_range_zoom_is_rejected_without_touching_cache_or_generator():
    handler, generator, cache = _handler()

    response = handler.handle("20", "0", "0")

    assert response.status == 400
    assert generator.calls == []
    assert cache.gets == []


def test_invalid_date_is_rejected():
    handler, generator, _ = _handler()

    response = handler.handle(1, 0, 0, date="2024-13-01")

    assert response.status == 400
    assert b"YYYY-MM-DD" in response.body
    assert generator.calls == []


def test_miss_generates_and_caches_tile():
    handler, generator, cache = _handler()

    response = handler.handle("10", "301", "384.pbf", date="2024-01-31")

    assert response.status == 200
    assert response.body == TILE
    assert response.headers["Content-Type"] == MVT_CONTENT_TYPE
    assert response.headers["ETag"] == fingerprint(TILE)
    assert response.headers["X-Tile-Cache"] == "MISS"
    assert response.headers["Cache-Control"] == (
        "public, max-age=3600, s-maxage=86400, stale-while-revalidate=604800"
    )
    assert generator.calls == [(10, 301, 384, date(2024, 1, 31))]
    assert cache.entries == {TileKey("permits", 10, 301, 384, date(2024, 1, 31)): TILE}


def test_hit_serves_cached_bytes_without_generating():
    handler, generator, cache = _handler()
    cache.entries[TileKey("permits", 4, 4, 6, TODAY)] = b"cached"

    response = handler.handle(4, 4, 6)

    assert response.status == 200
    assert response.body == b"cached"
    assert response.headers["X-Tile-Cache"] == "HIT"
    assert generator.calls == []


def test_missing_date_defaults_to_today():
    handler, generator, cache = _handler()

    handler.handle(2, 1, 1)

    assert generator.calls == [(2, 1, 1, TODAY)]
    assert TileKey("permits", 2, 1, 1, TODAY) in cache.entries


def test_empty_tile_is_served_but_never_cached():
    handler, _, cache = _handler(FakeGenerator(default=b""))

    response = handler.handle(16, 0, 0)

    assert response.status == 200
    assert response.body == b""
    assert "ETag" not in response.headers
    assert cache.entries == {}


def test_matching_etag_returns_304():
    handler, _, cache = _handler()
    cache.entries[TileKey("permits", 3, 1, 2, TODAY)] = TILE

    response = handler.handle(3, 1, 2, if_none_match=fingerprint(TILE))

    assert response.status == 304
    assert response.body == b""
    assert response.headers["ETag"] == fingerprint(TILE)
    assert "Content-Type" not in response.headers


def test_stale_etag_after_regeneration_returns_new_body():
    generator = FakeGenerator(default=b"v2")
    handler, _, cache = _handler(generator)
    old_etag = fingerprint(b"v1")

    response = handler.handle(3, 1, 2, if_none_match=old_etag)

    assert response.status == 200
    assert response.body == b"v2"
    assert response.headers["ETag"] != old_etag


def test_cache_write_failure_does_not_fail_request(caplog):
    cache = FakeCache()
    cache.write_error = RuntimeError("disk full")
    handler, _, _ = _handler(cache=cache)

    response = handler.handle(5, 3, 3)

    assert response.status == 200
    assert response.body == TILE
    assert "Tile cache write failed" in caplog.text


def test_cache_read_failure_falls_back_to_generation():
    cache = FakeCache()
    cache.read_error = ConnectionError("cache down")
    handler, generator, _ = _handler(cache=cache)

    response = handler.handle(5, 3, 3)

    assert response.status == 200
    assert len(generator.calls) == 1


def test_generator_failure_is_a_server_error():
    generator = FakeGenerator()
    generator.error = RuntimeError("statement timeout")
    handler, _, cache = _handler(generator)

    response = handler.handle(5, 3, 3)

    assert response.status == 500
    assert response.headers["Content-Type"] == "application/json"
    assert b"statement timeout" in response.body
    assert cache.entries == {}


def test_max_zoom_and_layer_follow_config():
    handler, generator, cache = _handler(max_zoom=12, layer="permits_v2")

    assert handler.handle(13, 0, 0).status == 400
    assert handler.handle(12, 0, 0).status == 200
    assert TileKey("permits_v2", 12, 0, 0, TODAY) in cache.entries


def test_path_segments_must_be_plain_ascii_digits():
    handler, generator, cache = _handler()

    assert handler.handle("1\n", "\u0661", "0").status == 400
    assert handler.handle(1, 0, 0, date="2024-01-31\n").status == 400
    assert generator.calls == []
    assert cache.gets == []
