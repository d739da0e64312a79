"""Runtime state of one served site directory."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx
from fastapi.templating import Jinja2Templates
from starlette.routing import compile_path

from pagesmith.apps.site.pages import VIEW_SUFFIX, Page
from pagesmith.core.settings import Settings, get_settings
from pagesmith.domain.preprocessing.loader import Preprocessor, load_preprocessors
from pagesmith.domain.preprocessing.pool import WorkerPool
from pagesmith.domain.resources.cache import CacheStore
from pagesmith.domain.resources.fetcher import ResourceFetcher
from pagesmith.domain.resources.service import ResourceService

logger = logging.getLogger(__name__)

NOT_FOUND_VIEW = "404" + VIEW_SUFFIX


@dataclass(frozen=True)
class RouteMatch:
    page: Page
    path_params: dict[str, Any]
    as_json: bool = False


def read_auth(path: Path) -> Optional[dict[str, Any]]:
    """Overlay table from ``auth.json``; ``{}`` when absent, ``None`` when unreadable."""

    if not path.exists():
        return {}
    try:
        with path.open(encoding="utf-8") as fh:
            auth = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.error("Error: could not load %s: %s", path.name, exc)
        return None
    if not isinstance(auth, dict):
        logger.error("Error: could not load %s: top level must be an object", path.name)
        return None
    return auth


class Site:
    def __init__(self, settings: Settings, resources: ResourceService):
        self.settings = settings
        self.resources = resources
        self.templates = Jinja2Templates(directory=str(settings.views_path))
        self.pages: dict[str, Page] = {}
        self.preprocessors: dict[str, Preprocessor] = {}
        self.pool: Optional[WorkerPool] = None
        self._routes: list[tuple[re.Pattern[str], Page]] = []

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "Site":
        settings = settings or get_settings()
        store = CacheStore(
            max_entries=settings.resource_cache_max_entries,
            max_age=settings.resource_cache_max_age,
        )
        fetcher = ResourceFetcher(client, timeout=settings.resource_http_timeout, clock=store.clock)
        resources = ResourceService(
            store,
            fetcher,
            auth=read_auth(settings.auth_path) or {},
            default_freshness=settings.resource_default_freshness,
        )
        site = cls(settings, resources)
        await site.load_views()
        await site.reload_preprocessors()
        logger.info(
            "Site %s ready: %d views, %d preprocessors",
            settings.site_path,
            len(site.pages),
            len(site.preprocessors),
        )
        return site

    # ------------------------------------------------------------------
    # Views and routes
    # ------------------------------------------------------------------

    async def load_views(self) -> None:
        views_path = self.settings.views_path
        paths = sorted(views_path.rglob(f"*{VIEW_SUFFIX}")) if views_path.is_dir() else []
        pages = await asyncio.gather(*(Page.load(path, self) for path in paths))
        self.pages = {page.view: page for page in pages}
        self._build_routes()

    def _build_routes(self) -> None:
        by_route: dict[str, Page] = {}
        for page in self.pages.values():
            if page.is_layout:
                continue
            existing = by_route.get(page.route)
            if existing is not None:
                logger.warning("Warning. You have a conflicting route at %r", page.route)
                if not page.is_index:
                    continue
            by_route[page.route] = page

        # Literal routes are tried before parameterised ones.
        ordered = sorted(by_route.items(), key=lambda item: ("{" in item[0], item[0]))
        self._routes = [(compile_path(route)[0], page) for route, page in ordered]

    def match(self, path: str) -> Optional[RouteMatch]:
        """Find the page serving ``path``; ``<route>.json`` selects the JSON variant."""

        # Checked first so a parameter segment never swallows the suffix.
        if path.endswith(".json"):
            found = self._match(path[: -len(".json")] or "/")
            if found is not None:
                return RouteMatch(found[0], found[1], as_json=True)
        found = self._match(path)
        if found is not None:
            return RouteMatch(found[0], found[1])
        return None

    def _match(self, path: str) -> Optional[tuple[Page, dict[str, Any]]]:
        for pattern, page in self._routes:
            matched = pattern.match(path)
            if matched:
                return page, matched.groupdict()
        return None

    @property
    def not_found_page(self) -> Optional[Page]:
        return self.pages.get(NOT_FOUND_VIEW)

    @property
    def routes(self) -> list[str]:
        return [page.route for _, page in self._routes]

    # ------------------------------------------------------------------
    # Reloading
    # ------------------------------------------------------------------

    async def reload_auth(self) -> None:
        """Reread ``auth.json``; preprocessors are rebuilt so their resources see the new overlays."""

        auth = read_auth(self.settings.auth_path)
        if auth is None:
            return
        self.resources.set_auth(auth)
        await self.reload_preprocessors()

    async def reload_preprocessors(self) -> None:
        """Reload ``preprocessors.py`` and replace the worker pool with a fresh one."""

        loop = asyncio.get_running_loop()
        self.preprocessors = await loop.run_in_executor(
            None,
            load_preprocessors,
            self.settings.preprocessors_path,
            dict(self.resources.auth),
        )

        settings = self.settings
        old_pool = self.pool
        self.pool = await WorkerPool.create(
            size=settings.worker_pool_size,
            max_calls_per_unit=settings.worker_max_calls,
            max_call_time=settings.worker_max_call_time,
            unit_timeout=settings.worker_unit_timeout,
            start_method=settings.worker_start_method,
        )
        if old_pool is not None:
            await old_pool.shutdown()

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.shutdown()
        await self.resources.aclose()


__all__ = ["RouteMatch", "Site", "read_auth"]
