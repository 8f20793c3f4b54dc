"""
Runtime configuration.

Settings are read once at startup from the environment (after .env is
loaded) and passed to the services that need them.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_TTLS = {
    "search": 300,
    "list": 300,
    "options": 3600,
    "profile": 86400,
    "sitemap": 86400,
    "sitemap-index": 3600,
}


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


@dataclass
class Settings:
    """Process configuration for ingestion, caching and background jobs."""

    database_url: str
    redis_url: Optional[str] = None
    source_api_base: Optional[str] = None
    source_api_key: Optional[str] = None
    source_name: str = "api"
    per_page: int = 100
    batch_size: int = 500
    concurrency: int = 25
    max_attempts: int = 5
    chunk_size: int = 50_000
    site_base_url: str = "https://voterspheres.org"
    resync_interval: int = 86400
    pregen_delay: int = 30
    local_cache_size: int = 10_000
    ttls: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TTLS))
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Raises:
            ConfigError: If DATABASE_URL is missing or a value is invalid
        """
        env = os.environ if env is None else env

        database_url = (env.get("DATABASE_URL") or "").strip()
        if not database_url:
            raise ConfigError("DATABASE_URL is not set")

        ttls = dict(DEFAULT_TTLS)
        for kind in ttls:
            key = "CACHE_TTL_" + kind.upper().replace("-", "_")
            ttls[kind] = _int(env, key, ttls[kind], minimum=1)

        batch_size = _int(env, "BATCH_SIZE", 500, minimum=1)
        concurrency = _int(env, "CONCURRENCY", 25, minimum=1)
        log_dir = env.get("LOG_DIR")

        return cls(
            database_url=database_url,
            redis_url=(env.get("REDIS_URL") or None),
            source_api_base=(env.get("SOURCE_API_BASE") or None),
            source_api_key=(env.get("SOURCE_API_KEY") or None),
            source_name=env.get("SOURCE_NAME") or "api",
            per_page=_int(env, "PER_PAGE", 100, minimum=1),
            batch_size=batch_size,
            concurrency=concurrency,
            max_attempts=_int(env, "MAX_ATTEMPTS", 5, minimum=1),
            chunk_size=_int(env, "CHUNK_SIZE", 50_000, minimum=1),
            site_base_url=(env.get("SITE_BASE_URL") or "https://voterspheres.org").rstrip("/"),
            resync_interval=_int(env, "RESYNC_INTERVAL", 86400, minimum=1),
            pregen_delay=_int(env, "PREGEN_DELAY", 30),
            local_cache_size=_int(env, "LOCAL_CACHE_SIZE", 10_000, minimum=1),
            ttls=ttls,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            log_dir=Path(log_dir) if log_dir else None,
        )

    def require_source(self) -> str:
        """Return the source API base URL or fail with a ConfigError."""
        if not self.source_api_base:
            raise ConfigError("SOURCE_API_BASE is not set")
        return self.source_api_base.rstrip("/")
