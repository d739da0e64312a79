"""Pages: one Jinja2 view under ``views/`` served at a route derived from its path.

A view may start with a JSON config comment::

    {# {"title": "Home", "layout": "layouts/wide.html"} #}

Rendering assembles the context in two steps, resources first (in parallel)
then the preprocessor chain (in order), under one time budget. Whatever the
context holds when the budget runs out is what gets rendered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse, Response
from markupsafe import Markup

from pagesmith.core.metrics import observe_page
from pagesmith.domain.preprocessing.chain import build_chain, merge_resources
from pagesmith.domain.preprocessing.loader import Preprocessor

if TYPE_CHECKING:
    from pathlib import Path

    from pagesmith.apps.site.site import Site

logger = logging.getLogger(__name__)

VIEW_SUFFIX = ".html"
LAYOUT_NAME = "layout" + VIEW_SUFFIX
PAGE_MAX_AGE = 60 * 5
MODIFIED_ROUND_TIME = 60 * 5

_CONFIG_COMMENT = re.compile(r"^\s*\{#-?\s*(\{[\s\S]*?\})\s*-?#\}")
_COMMENT = re.compile(r"\{#[\s\S]*?#\}")
_INCLUDE = re.compile(r"\{%-?\s*include\s+(['\"])(.+?)\1")


def route_for(view: str) -> str:
    """``blog/index.html`` -> ``/blog``; ``items/{id}.html`` -> ``/items/{id}``."""

    parts = list(PurePosixPath(view).with_suffix("").parts)
    if parts and parts[-1] == "index":
        parts = parts[:-1]
    return "/" + "/".join(parts)


def parse_config(source: str, view: str = "") -> dict[str, Any]:
    match = _CONFIG_COMMENT.match(source)
    if not match:
        return {}
    try:
        config = json.loads(match.group(1))
    except ValueError as exc:
        logger.error("Error preprocessing %r: %s", view, exc, extra={"view": view})
        return {}
    if not isinstance(config, dict):
        logger.error("Error preprocessing %r: config must be an object", view, extra={"view": view})
        return {}
    return config


def find_partials(source: str) -> list[str]:
    """Names of templates pulled in with ``{% include %}``, in order, ignoring commented-out ones."""

    partials: list[str] = []
    for match in _INCLUDE.finditer(_COMMENT.sub("", source)):
        name = match.group(2)
        if name not in partials:
            partials.append(name)
    return partials


def _url_data(request: Request) -> dict[str, Any]:
    url = request.url
    protocol = f"{url.scheme}:"
    host = url.netloc
    search = f"?{url.query}" if url.query else ""
    return {
        "href": str(url),
        "protocol": protocol,
        "host": host,
        "hostname": url.hostname,
        "port": url.port,
        "pathname": url.path,
        "search": search,
        "path": url.path + search,
        "query": dict(request.query_params),
        "hash": f"#{url.fragment}" if url.fragment else "",
        "origin": f"{protocol}//{host}",
    }


def _cache_headers(now: Optional[float] = None) -> dict[str, str]:
    now = time.time() if now is None else now
    return {
        "Cache-Control": f"public, max-age={PAGE_MAX_AGE}",
        "Expires": formatdate(now + PAGE_MAX_AGE, usegmt=True),
        "Last-Modified": formatdate(now - (now % MODIFIED_ROUND_TIME), usegmt=True),
    }


@dataclass
class _Assembly:
    context: dict[str, Any]
    step: str = "resources"


@dataclass
class Page:
    view: str
    path: "Path"
    site: "Site" = field(repr=False)
    config: dict[str, Any] = field(default_factory=dict)
    partials: list[str] = field(default_factory=list)

    @classmethod
    async def load(cls, path: "Path", site: "Site") -> "Page":
        loop = asyncio.get_running_loop()
        source = await loop.run_in_executor(None, path.read_text, "utf-8")
        view = path.relative_to(site.settings.views_path).as_posix()
        return cls(
            view=view,
            path=path,
            site=site,
            config=parse_config(source, view),
            partials=find_partials(source),
        )

    @property
    def route(self) -> str:
        return route_for(self.view)

    @property
    def is_index(self) -> bool:
        return PurePosixPath(self.view).stem == "index"

    @property
    def is_layout(self) -> bool:
        return PurePosixPath(self.view).name == LAYOUT_NAME

    @property
    def title(self) -> Optional[str]:
        return self.config.get("title")

    @property
    def description(self) -> Optional[str]:
        return self.config.get("description")

    @property
    def name(self) -> Optional[str]:
        return self.config.get("name")

    @property
    def layout(self) -> Union[str, bool, None]:
        """Explicit config wins (``false`` disables); otherwise the nearest ``layout.html`` above."""

        configured = self.config.get("layout")
        if configured is False or isinstance(configured, str):
            return configured
        if self.is_layout:
            return None
        directory = PurePosixPath(self.view).parent
        for candidate in (directory, *directory.parents):
            layout = (candidate / LAYOUT_NAME).as_posix()
            if layout in self.site.pages:
                return layout
        return None

    def preprocessors(self) -> list[Preprocessor]:
        site = self.site

        def partials_of(view: str) -> list[str]:
            page = site.pages.get(view)
            return page.partials if page is not None else []

        return build_chain(self.view, site.preprocessors, partials_of)

    def base_context(self, request: Request, path_params: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        query = dict(request.query_params)
        parameters = dict(path_params or {})
        parameters.update(query)
        return {
            "url": _url_data(request),
            "page": {
                "path": self.view,
                "title": self.title,
                "description": self.description,
                "name": self.name,
            },
            "parameters": parameters,
            "query": query,
            "resources": {},
            "layout": self.layout,
            "dev": self.site.settings.dev,
        }

    async def render(
        self,
        request: Request,
        *,
        path_params: Optional[Mapping[str, Any]] = None,
        as_json: bool = False,
        status_code: int = 200,
    ) -> Response:
        started = time.perf_counter()
        timeout = self.site.settings.page_timeout
        assembly = _Assembly(self.base_context(request, path_params))

        task = asyncio.create_task(self._assemble(assembly, self.preprocessors()))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            try:
                task.result()
            except Exception:
                observe_page("error")
                logger.exception(
                    "%s failed during %s; rendering what is available",
                    self.route,
                    assembly.step,
                    extra={"route": self.route, "reason": assembly.step},
                )
            else:
                observe_page("complete")
        else:
            task.cancel()
            observe_page("timeout")
            logger.warning(
                "%s not ready after %.1fs (during %s); rendering what is available",
                self.route,
                timeout,
                assembly.step,
                extra={"route": self.route, "reason": assembly.step},
            )

        response = self._respond(request, assembly.context, as_json=as_json, status_code=status_code)
        logger.info(
            "%s served in %.0fms",
            self.route,
            (time.perf_counter() - started) * 1000,
            extra={"route": self.route},
        )
        return response

    async def _assemble(self, assembly: _Assembly, chain: list[Preprocessor]) -> None:
        site = self.site
        context = assembly.context
        resources = merge_resources(chain)

        async def fetch_one(name: str, descriptor) -> None:
            context["resources"][name] = await site.resources.fetch(descriptor, context["parameters"])

        if resources:
            await asyncio.gather(*(fetch_one(name, descriptor) for name, descriptor in resources.items()))

        for preprocessor in chain:
            assembly.step = f"preprocessor {preprocessor.view}"
            logger.debug("Running preprocessor for %s", preprocessor.view)
            result = await preprocessor.process(site.pool, assembly.context)
            if isinstance(result, dict):
                assembly.context = result
            else:
                logger.error(
                    "Preprocessor Error: %s returned %s instead of a context",
                    preprocessor.view,
                    type(result).__name__,
                    extra={"view": preprocessor.view},
                )
        assembly.step = "render"

    def _respond(
        self,
        request: Request,
        context: dict[str, Any],
        *,
        as_json: bool,
        status_code: int,
    ) -> Response:
        headers = {} if self.site.settings.dev else _cache_headers()
        if as_json:
            return JSONResponse(jsonable_encoder(context), status_code=status_code, headers=headers)

        env = self.site.templates.env
        html = env.get_template(self.view).render({**context, "request": request})
        layout = context.get("layout")
        if isinstance(layout, str) and layout and layout != self.view:
            html = env.get_template(layout).render({**context, "request": request, "body": Markup(html)})
        return HTMLResponse(html, status_code=status_code, headers=headers)


__all__ = ["Page", "find_partials", "parse_config", "route_for"]
