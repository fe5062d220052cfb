import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from permitmap.etl.config import AppConfig
from permitmap.etl.postgres import PostgresClient
from permitmap.etl.runner import build_tile_cache
from permitmap.tiles import TileRequestHandler, TileService


CONFIG = AppConfig.from_env()
PG_CLIENT = PostgresClient.from_config(CONFIG.database, application_name="tiles-service")
TILE_HANDLER = TileRequestHandler(
    TileService(pg=PG_CLIENT, layer=CONFIG.tiles.layer),
    build_tile_cache(CONFIG, PG_CLIENT),
    CONFIG.tiles,
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, apikey, If-None-Match",
}


def _text(status: int, message: str):
    headers = {"Content-Type": "text/plain; charset=utf-8", **CORS_HEADERS}
    return status, headers, message


def _tile_path(request):
    """Return (z, x, y) from ``/tiles/permits/{z}/{x}/{y}`` or the query string."""

    path = getattr(request, "path", "") or ""
    parts = [part for part in path.split("/") if part]
    if "tiles" in parts:
        index = parts.index("tiles")
        tail = parts[index + 1:]
        if len(tail) == 4 and tail[0] == CONFIG.tiles.layer:
            return tail[1], tail[2], tail[3]
        return None
    args = request.args or {}
    if args.get("z") is None:
        return None
    return args.get("z"), args.get("x"), args.get("y")


def handler(request):  # Vercel-style handler
    if request.method == "OPTIONS":
        return 204, {**CORS_HEADERS, "Access-Control-Max-Age": "86400"}, b""
    if request.method != "GET":
        return _text(405, "Method not allowed")

    coordinates = _tile_path(request)
    if coordinates is None:
        return _text(400, f"Invalid path. Expected: /tiles/{CONFIG.tiles.layer}/{{z}}/{{x}}/{{y}}")

    date = request.args.get("date") if request.args else None
    if_none_match = request.headers.get("If-None-Match") if request.headers else None
    try:
        response = TILE_HANDLER.handle(*coordinates, date=date, if_none_match=if_none_match)
    except Exception as exc:  # pragma: no cover
        return 500, {"Content-Type": "application/json", **CORS_HEADERS}, json.dumps({"error": str(exc)})

    return response.status, {**response.headers, **CORS_HEADERS}, response.body
