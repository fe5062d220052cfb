"""Incremental ETL of the NYC DOB permit dataset."""

from .config import (
    AppConfig,
    ConfigError,
    DatabaseConfig,
    RedisConfig,
    SocrataConfig,
    SyncConfig,
    TileConfig,
)

__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "RedisConfig",
    "SocrataConfig",
    "SyncConfig",
    "TileConfig",
]
