from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from catalog_backend.core.env import load_env


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_USER_DATA_DIR = Path.home() / ".service_catalog" / "data"
DEFAULT_CONTENT_SERVICE_URL = "https://cms.example.com/api"


@dataclass(frozen=True)
class Settings:
    environment: str  # development, production, staging, test
    data_dir: Path
    database_url: str
    sql_echo: bool
    content_service_url: str
    catalog_cache_ttl_seconds: float
    service_cache_ttl_seconds: float
    categories_cache_ttl_seconds: float
    cache_max_entries: int
    cache_sweep_interval_seconds: float
    cache_delta_log_size: int
    content_fetch_timeout_seconds: float
    content_fetch_max_attempts: int
    content_fetch_retry_base_delay: float
    content_cache_ttl_seconds: float
    sync_health_window_hours: float
    sync_history_size: int
    sync_interval_seconds: float
    sync_delta_page_size: int
    webhook_secret: str
    log_level: str
    log_json: bool
    log_file: str


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


load_env()


def _default_data_dir() -> Path:
    env_dir = os.getenv("DATA_DIR")
    if env_dir and env_dir.strip():
        return Path(env_dir).expanduser()
    return DEFAULT_USER_DATA_DIR


def _normalize_database_url(url: str) -> str:
    # Plain driver names are promoted to their async counterparts.
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url.split("://", 1)[1]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url.split("///", 1)[1]
    return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    if environment not in {"development", "production", "staging", "test"}:
        environment = "development"

    data_dir = _default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    db_url_env = (os.getenv("DATABASE_URL") or "").strip()
    if db_url_env:
        database_url = _normalize_database_url(db_url_env)
    else:
        database_url = f"sqlite+aiosqlite:///{data_dir / 'catalog.db'}"

    content_service_url = (
        os.getenv("CONTENT_SERVICE_URL", "").strip()
        or os.getenv("LARAVEL_CMS_URL", "").strip()
        or DEFAULT_CONTENT_SERVICE_URL
    ).rstrip("/")

    catalog_ttl = _get_float("CATALOG_CACHE_TTL_SECONDS", 300.0, minimum=0.001)
    service_ttl = _get_float("SERVICE_CACHE_TTL_SECONDS", 60.0, minimum=0.001)
    categories_ttl = _get_float("CATEGORIES_CACHE_TTL_SECONDS", 300.0, minimum=0.001)
    cache_max_entries = _get_int("CACHE_MAX_ENTRIES", 1000, minimum=1)
    sweep_interval = _get_float("CACHE_SWEEP_INTERVAL_SECONDS", 60.0, minimum=0.1)
    delta_log_size = _get_int("CACHE_DELTA_LOG_SIZE", 100, minimum=1)

    fetch_timeout = _get_float("CONTENT_FETCH_TIMEOUT_SECONDS", 10.0, minimum=0.1)
    fetch_attempts = _get_int("CONTENT_FETCH_MAX_ATTEMPTS", 3, minimum=1)
    fetch_base_delay = _get_float("CONTENT_FETCH_RETRY_BASE_DELAY", 1.0, minimum=0.0)
    content_cache_ttl = _get_float("CONTENT_CACHE_TTL_SECONDS", 30.0, minimum=0.001)

    window_hours = _get_float("SYNC_HEALTH_WINDOW_HOURS", 24.0, minimum=0.01)
    history_size = _get_int("SYNC_HISTORY_SIZE", 500, minimum=1)
    sync_interval = _get_float("SYNC_INTERVAL_SECONDS", 900.0, minimum=0.0)
    delta_page_size = _get_int("SYNC_DELTA_PAGE_SIZE", 500, minimum=1)

    webhook_secret = os.getenv("CMS_WEBHOOK_SECRET", "").strip()

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_json = _get_bool("LOG_JSON", default=False)
    log_file = os.getenv("LOG_FILE", "").strip()
    if not log_file:
        log_dir = data_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = str(log_dir / "app.log")

    return Settings(
        environment=environment,
        data_dir=data_dir,
        database_url=database_url,
        sql_echo=os.getenv("SQL_ECHO", "0") in {"1", "true", "True"},
        content_service_url=content_service_url,
        catalog_cache_ttl_seconds=catalog_ttl,
        service_cache_ttl_seconds=service_ttl,
        categories_cache_ttl_seconds=categories_ttl,
        cache_max_entries=cache_max_entries,
        cache_sweep_interval_seconds=sweep_interval,
        cache_delta_log_size=delta_log_size,
        content_fetch_timeout_seconds=fetch_timeout,
        content_fetch_max_attempts=fetch_attempts,
        content_fetch_retry_base_delay=fetch_base_delay,
        content_cache_ttl_seconds=content_cache_ttl,
        sync_health_window_hours=window_hours,
        sync_history_size=history_size,
        sync_interval_seconds=sync_interval,
        sync_delta_page_size=delta_page_size,
        webhook_secret=webhook_secret,
        log_level=log_level,
        log_json=log_json,
        log_file=log_file,
    )
