"""Configuration objects for permit ingestion and tile delivery."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
import os

import dotenv


DOB_PERMITS_DATASET_ID = "ipu4-2q9a"
TILE_CACHE_BACKENDS = ("postgres", "redis")


class ConfigError(ValueError):
    """Raised when the environment does not describe a usable configuration."""


def _normalise_postgres_dsn(dsn: str) -> str:
    return dsn.replace("postgres://", "postgresql://", 1) if dsn.startswith("postgres://") else dsn


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for PostgreSQL/PostGIS."""

    dsn: str
    schema: str = "public"
    application_name: str = "permitmap"
    connect_timeout: int = 10
    statement_timeout_ms: int | None = 60_000

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "DatabaseConfig":
        env = os.environ if env is None else env
        candidates = [
            env.get("POSTGIS_DATABASE_URL"),
            env.get("DATABASE_URL"),
            env.get("PG_DSN"),
            env.get("DATABASE_PRIVATE_URL"),
            env.get("DATABASE_PUBLIC_URL"),
        ]
        dsn = next((value for value in candidates if value), None)
        if not dsn:
            raise ConfigError("DATABASE_URL (or PG_DSN) must be set in the environment")
        dsn = _normalise_postgres_dsn(dsn)
        schema = env.get("POSTGRES_SCHEMA", "public")
        timeout = _env_int(env, "PG_STATEMENT_TIMEOUT_MS", 60_000)
        return cls(dsn=dsn, schema=schema, statement_timeout_ms=timeout or None)


@dataclass(frozen=True)
class RedisConfig:
    """Configuration for the optional Redis tile cache."""

    url: str
    default_ttl_seconds: int = 7 * 24 * 3600
    namespace: str = "permitmap"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RedisConfig | None":
        env = os.environ if env is None else env
        url = env.get("REDIS_URL") or env.get("REDIS_PUBLIC_URL") or env.get("REDIS_CONNECTION")
        if not url:
            return None
        ttl = _env_int(env, "REDIS_DEFAULT_TTL", 7 * 24 * 3600)
        namespace = env.get("REDIS_NAMESPACE", "permitmap")
        return cls(url=url, default_ttl_seconds=ttl, namespace=namespace)


@dataclass(frozen=True)
class SocrataConfig:
    """Where and how to reach the upstream permit dataset."""

    base_url: str = "https://data.cityofnewyork.us"
    dataset_id: str = DOB_PERMITS_DATASET_ID
    app_token: str | None = None
    timeout: int = 60
    user_agent: str = "permitmap-sync/1.0"

    @property
    def resource_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/resource/{self.dataset_id}.json"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SocrataConfig":
        env = os.environ if env is None else env
        return cls(
            base_url=env.get("SOCRATA_BASE_URL", cls.base_url),
            dataset_id=env.get("SOCRATA_DATASET_ID", DOB_PERMITS_DATASET_ID),
            app_token=env.get("SOCRATA_APP_TOKEN") or None,
            timeout=_env_int(env, "SOCRATA_TIMEOUT", 60),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Pagination and retry policy for an ingestion run."""

    page_size: int = 5000
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    preflight: bool = True

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ConfigError("SYNC_PAGE_SIZE must be positive")
        if self.max_attempts < 1:
            raise ConfigError("SYNC_MAX_ATTEMPTS must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigError("Retry delays must not be negative")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SyncConfig":
        env = os.environ if env is None else env
        return cls(
            page_size=_env_int(env, "SYNC_PAGE_SIZE", 5000),
            max_attempts=_env_int(env, "SYNC_MAX_ATTEMPTS", 3),
            retry_base_delay=_env_float(env, "SYNC_RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_env_float(env, "SYNC_RETRY_MAX_DELAY", 30.0),
            preflight=_env_bool(env, "SYNC_PREFLIGHT", True),
        )


@dataclass(frozen=True)
class TileConfig:
    """Tile endpoint guardrails and HTTP caching policy."""

    layer: str = "permits"
    max_zoom: int = 16
    cache_backend: str = "postgres"
    max_age: int = 3600
    s_maxage: int = 86400
    stale_while_revalidate: int = 604800
    cache_sweep_days: int = 7

    def __post_init__(self) -> None:
        if not 0 <= self.max_zoom <= 22:
            raise ConfigError("TILE_MAX_ZOOM must be between 0 and 22")
        if self.cache_backend not in TILE_CACHE_BACKENDS:
            raise ConfigError(
                f"TILE_CACHE_BACKEND must be one of {', '.join(TILE_CACHE_BACKENDS)}"
            )
        if min(self.max_age, self.s_maxage, self.stale_while_revalidate) < 0:
            raise ConfigError("Cache-Control windows must not be negative")
        if self.cache_sweep_days < 1:
            raise ConfigError("TILE_CACHE_SWEEP_DAYS must be at least 1")

    @property
    def cache_control(self) -> str:
        return (
            f"public, max-age={self.max_age}, s-maxage={self.s_maxage}, "
            f"stale-while-revalidate={self.stale_while_revalidate}"
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "TileConfig":
        env = os.environ if env is None else env
        return cls(
            layer=env.get("TILE_LAYER", "permits"),
            max_zoom=_env_int(env, "TILE_MAX_ZOOM", 16),
            cache_backend=env.get("TILE_CACHE_BACKEND", "postgres").strip().lower(),
            max_age=_env_int(env, "TILE_MAX_AGE", 3600),
            s_maxage=_env_int(env, "TILE_S_MAXAGE", 86400),
            stale_while_revalidate=_env_int(env, "TILE_STALE_WHILE_REVALIDATE", 604800),
            cache_sweep_days=_env_int(env, "TILE_CACHE_SWEEP_DAYS", 7),
        )


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration, read once at process start."""

    database: DatabaseConfig
    socrata: SocrataConfig
    sync: SyncConfig
    tiles: TileConfig
    redis: RedisConfig | None = None

    def __post_init__(self) -> None:
        if self.tiles.cache_backend == "redis" and self.redis is None:
            raise ConfigError("TILE_CACHE_BACKEND=redis requires REDIS_URL to be set")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, *, load_dotenv: bool = True) -> "AppConfig":
        """Build the configuration from the process environment.

        Parameters
        ----------
        env:
            Optional mapping used instead of ``os.environ`` (handy in tests).
        load_dotenv:
            When reading ``os.environ``, first merge a ``.env`` file from the
            working directory without overriding variables already set.
        """

        if env is None and load_dotenv:
            dotenv.load_dotenv(override=False)
        env = os.environ if env is None else env
        return cls(
            database=DatabaseConfig.from_env(env),
            socrata=SocrataConfig.from_env(env),
            sync=SyncConfig.from_env(env),
            tiles=TileConfig.from_env(env),
            redis=RedisConfig.from_env(env),
        )


__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "RedisConfig",
    "SocrataConfig",
    "SyncConfig",
    "TileConfig",
    "DOB_PERMITS_DATASET_ID",
]
