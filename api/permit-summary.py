import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from permitmap.etl.config import DatabaseConfig
from permitmap.etl.postgres import PostgresClient
from permitmap.reports import daily_summary
from permitmap.tiles.handler import TileRequestError, parse_tile_date


DATABASE_CONFIG = DatabaseConfig.from_env()
PG_CLIENT = PostgresClient.from_config(DATABASE_CONFIG, application_name="permit-summary-service")


def _json(status: int, payload: dict):
    return status, {"Content-Type": "application/json"}, json.dumps(payload)


def handler(request):
    if request.method != "GET":
        return _json(405, {"error": "Method not allowed"})

    raw_date = request.args.get("date") if request.args else None
    if not raw_date:
        return _json(400, {"error": "date parameter is required (YYYY-MM-DD)"})
    try:
        day = parse_tile_date(raw_date)
    except TileRequestError as exc:
        return _json(400, {"error": str(exc)})

    try:
        payload = daily_summary(PG_CLIENT, day)
    except Exception as exc:  # pragma: no cover
        return _json(500, {"error": str(exc)})

    return _json(200, payload)
