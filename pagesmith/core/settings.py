from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pagesmith.core.env import load_env

logger = logging.getLogger(__name__)

DEFAULT_USER_DATA_DIR = Path.home() / ".pagesmith" / "data"
DEFAULT_PORT = 8080
DEFAULT_API_ROUTE = "/api"
DEFAULT_PAGE_TIMEOUT = 5.0

# Resource cache
DEFAULT_CACHE_MAX_ENTRIES = 50
DEFAULT_CACHE_MAX_AGE = 60 * 60 * 24  # 24 hours
DEFAULT_RESOURCE_FRESHNESS = 60
DEFAULT_HTTP_TIMEOUT = 30.0

# Preprocessor worker pool
DEFAULT_WORKER_POOL_SIZE = 4
DEFAULT_WORKER_MAX_CALLS = 100
DEFAULT_WORKER_MAX_CALL_TIME = 1.0
DEFAULT_WORKER_UNIT_TIMEOUT = 5.0

TRUTHY = frozenset({"1", "true", "yes", "on"})
N = TypeVar("N", int, float)


@dataclass(frozen=True)
class Settings:
    environment: str  # development, production, staging, test
    site_path: Path
    data_dir: Path
    host: str
    port: int
    log_level: str
    log_json: bool
    log_file: str
    api_route: str
    page_timeout: float
    resource_cache_max_entries: int
    resource_cache_max_age: float
    resource_default_freshness: float
    resource_http_timeout: float
    worker_pool_size: int
    worker_max_calls: int
    worker_max_call_time: float
    worker_unit_timeout: float
    worker_start_method: str
    metrics_enabled: bool

    @property
    def dev(self) -> bool:
        return self.environment == "development"

    @property
    def views_path(self) -> Path:
        return self.site_path / "views"

    @property
    def assets_path(self) -> Path:
        return self.site_path / "assets"

    @property
    def auth_path(self) -> Path:
        return self.site_path / "auth.json"

    @property
    def preprocessors_path(self) -> Path:
        return self.site_path / "preprocessors.py"


def _number(name: str, default: N, cast: Callable[[str], N], minimum: Optional[N] = None) -> N:
    """``cast`` of the variable, or ``default`` when unset, malformed or below ``minimum``."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        return default
    return default if minimum is not None and value < minimum else value


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    return _number(name, default, int, minimum)


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    return _number(name, default, float, minimum)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    return raw in TRUTHY if raw else default


load_env()


def _data_dir() -> Path:
    raw = os.getenv("DATA_DIR", "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_USER_DATA_DIR


def _site_path() -> Path:
    raw = os.getenv("SITE_PATH", "").strip()
    path = Path(raw).expanduser() if raw else Path.cwd()
    if not (path / "views").is_dir():
        logger.warning("Site directory %s has no views/ folder; no pages will be served.", path)
    return path.resolve()


def _api_route() -> str:
    route = os.getenv("API_ROUTE", DEFAULT_API_ROUTE).strip() or DEFAULT_API_ROUTE
    if not route.startswith("/"):
        route = "/" + route
    return route.rstrip("/") or DEFAULT_API_ROUTE


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "production").strip().lower()
    if environment not in {"development", "production", "staging", "test"}:
        environment = "production"

    data_dir = _data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    # An empty LOG_FILE means the default location; the directory is created
    # by configure_logging.
    log_file = os.getenv("LOG_FILE", "").strip() or str(data_dir / "logs" / "pagesmith.log")

    start_method = os.getenv("WORKER_START_METHOD", "spawn").strip().lower() or "spawn"
    if start_method not in {"spawn", "fork", "forkserver"}:
        start_method = "spawn"

    return Settings(
        environment=environment,
        site_path=_site_path(),
        data_dir=data_dir,
        host=os.getenv("HOST", "127.0.0.1").strip() or "127.0.0.1",
        port=_get_int("PORT", DEFAULT_PORT, minimum=1),
        log_level=os.getenv("LOG_LEVEL", "").strip().upper() or "INFO",
        log_json=_get_bool("LOG_JSON"),
        log_file=log_file,
        api_route=_api_route(),
        page_timeout=_get_float("PAGE_TIMEOUT", DEFAULT_PAGE_TIMEOUT, minimum=0.01),
        resource_cache_max_entries=_get_int(
            "RESOURCE_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES, minimum=1
        ),
        resource_cache_max_age=_get_float(
            "RESOURCE_CACHE_MAX_AGE", DEFAULT_CACHE_MAX_AGE, minimum=1.0
        ),
        resource_default_freshness=_get_float(
            "RESOURCE_DEFAULT_FRESHNESS", DEFAULT_RESOURCE_FRESHNESS, minimum=0.0
        ),
        resource_http_timeout=_get_float("RESOURCE_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, minimum=0.1),
        worker_pool_size=_get_int("WORKER_POOL_SIZE", DEFAULT_WORKER_POOL_SIZE, minimum=1),
        worker_max_calls=_get_int("WORKER_MAX_CALLS", DEFAULT_WORKER_MAX_CALLS, minimum=1),
        worker_max_call_time=_get_float(
            "WORKER_MAX_CALL_TIME", DEFAULT_WORKER_MAX_CALL_TIME, minimum=0.01
        ),
        worker_unit_timeout=_get_float(
            "WORKER_UNIT_TIMEOUT", DEFAULT_WORKER_UNIT_TIMEOUT, minimum=0.01
        ),
        worker_start_method=start_method,
        # Enabled by default outside production to support local perf work.
        metrics_enabled=_get_bool("METRICS_ENABLED", default=environment != "production"),
    )


__all__ = ["Settings", "get_settings"]
