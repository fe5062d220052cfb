"""Command line interface for the permit sync."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Sequence

from .bootstrap import ensure_schema
from .config import AppConfig
from .postgres import PostgresClient
from .socrata import SocrataClient
from .state import SyncStateStore
from .sync import SYNC_MODES, IngestionEngine, InvalidSyncRequest
from .upsert import PermitUpsert


LOGGER = logging.getLogger(__name__)


def build_engine(config: AppConfig, pg: PostgresClient, source: SocrataClient) -> IngestionEngine:
    return IngestionEngine(
        source,
        PermitUpsert(pg),
        SyncStateStore(pg),
        dataset_id=config.socrata.dataset_id,
        page_size=config.sync.page_size,
        preflight=config.sync.preflight,
    )


def build_tile_cache(config: AppConfig, pg: PostgresClient):
    if config.tiles.cache_backend == "redis" and config.redis is not None:
        from ..redis_cache import RedisTileCache

        return RedisTileCache(
            config.redis.url,
            default_ttl_seconds=config.redis.default_ttl_seconds,
            namespace=config.redis.namespace,
        )
    from ..tiles.cache import PostgresTileCache

    return PostgresTileCache(pg)


def run_sync(
    mode: str = "incremental",
    since: str | None = None,
    until: str | None = None,
    *,
    config: AppConfig | None = None,
    bootstrap: bool = False,
) -> dict:
    config = config or AppConfig.from_env()
    pg = PostgresClient.from_config(config.database, application_name="permitmap-sync")
    if bootstrap:
        ensure_schema(pg)
    source = SocrataClient.from_config(config.socrata, config.sync)
    try:
        result = build_engine(config, pg, source).sync(mode, since=since, until=until)
    finally:
        source.close()
    return result.to_payload()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="NYC DOB permit sync")
    parser.add_argument("--mode", choices=SYNC_MODES, default="incremental")
    parser.add_argument("--since", help="Override the stored watermark (ISO timestamp)")
    parser.add_argument("--until", help="Upper bound for updated_at (ISO timestamp)")
    parser.add_argument("--bootstrap", action="store_true", help="Create tables and indexes first")
    parser.add_argument("--skip-sync", action="store_true", help="Only run the maintenance flags")
    parser.add_argument(
        "--sweep-tile-cache",
        action="store_true",
        help="Delete cached tiles older than TILE_CACHE_SWEEP_DAYS",
    )
    parser.add_argument(
        "--report-coverage",
        action="store_true",
        help="Print min/max/null counts for each date column",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    config = AppConfig.from_env()
    pg = PostgresClient.from_config(config.database, application_name="permitmap-maintenance")
    exit_code = 0

    if args.bootstrap:
        ensure_schema(pg)

    if not args.skip_sync:
        try:
            payload = run_sync(
                args.mode,
                since=args.since,
                until=args.until,
                config=config,
            )
        except InvalidSyncRequest as exc:
            parser.error(str(exc))
        except Exception as exc:
            LOGGER.exception("Sync failed")
            payload = {"success": False, "error": str(exc)}
            exit_code = 1
        print(json.dumps(payload, indent=2))

    if args.sweep_tile_cache:
        removed = build_tile_cache(config, pg).sweep(config.tiles.cache_sweep_days)
        LOGGER.info("Removed %s cached tiles older than %s days", removed, config.tiles.cache_sweep_days)
    if args.report_coverage:
        from ..reports import date_coverage

        print(json.dumps(date_coverage(pg), indent=2))
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
