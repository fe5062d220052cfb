import json
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from permitmap.etl.config import AppConfig
from permitmap.etl.runner import run_sync
from permitmap.etl.sync import InvalidSyncRequest


LOGGER = logging.getLogger(__name__)

CONFIG = AppConfig.from_env()


def _json(status: int, payload: dict):
    return status, {"Content-Type": "application/json"}, json.dumps(payload)


def handler(request):  # Vercel-style handler
    if request.method not in ("GET", "POST"):
        return _json(405, {"success": False, "error": "Method not allowed"})

    args = request.args or {}
    mode = args.get("mode") or "incremental"
    since = args.get("since") or None
    until = args.get("until") or None

    try:
        payload = run_sync(mode, since=since, until=until, config=CONFIG)
    except InvalidSyncRequest as exc:
        return _json(400, {"success": False, "error": str(exc)})
    except Exception as exc:
        LOGGER.exception("Sync error")
        return _json(500, {"success": False, "error": str(exc)})

    return _json(200, payload)
