import os
import tempfile
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import Callable

import httpx
import pytest

TEST_ENV = {
    "ENVIRONMENT": "test",
    "DATA_DIR": tempfile.mkdtemp(prefix="pagesmith-test-"),
    "LOG_LEVEL": "DEBUG",
    "METRICS_ENABLED": "1",
    "WORKER_START_METHOD": "spawn",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from pagesmith.core import settings as settings_module  # noqa: E402
from pagesmith.core.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _replay(response: httpx.Response) -> httpx.Response:
    """A fresh copy of an already served response; the body is already decoded."""

    headers = [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in {"content-encoding", "content-length"}
    ]
    return httpx.Response(response.status_code, headers=headers, content=response.content)


class Upstream:
    """Scripted JSON upstream for ``httpx.MockTransport``.

    ``routes`` maps a URL path to a list of responses served in order; the
    last one repeats. Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.requests: list[httpx.Request] = []
        self._served: set[int] = set()

    def add(self, path: str, *responses) -> None:
        self.routes[path] = list(responses)

    def calls(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        if id(response) in self._served:
            return _replay(response)
        self._served.add(id(response))
        return response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def factory(site_path: Path, **overrides) -> Settings:
        base = settings_module.get_settings()
        values = {
            "site_path": Path(site_path).resolve(),
            "log_file": "",
            "worker_pool_size": 2,
            "worker_max_call_time": 2.0,
            "page_timeout": 10.0,
        }
        values.update(overrides)
        return replace(base, **values)

    return factory


def write_site(root: Path, files: dict[str, str]) -> Path:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")
    return root


SITE_FILES = {
    "views/layout.html": """
        <html><head><title>{{ page.title }}</title></head><body>{{ body }}</body></html>
    """,
    "views/index.html": """
        {# {"title": "Home", "name": "home"} #}
        <h1>{{ resources.greeting.message }}</h1>
        {% include "partials/nav.html" %}
        <p id="order">{{ order | join(",") }}</p>
    """,
    "views/partials/nav.html": """
        <nav>{{ resources.menu | length }} items</nav>
    """,
    "views/items/{id}.html": """
        {# {"title": "Item", "layout": false} #}
        <p>{{ parameters.id }} {{ resources.item.name }}</p>
    """,
    "views/404.html": """
        <p>missing</p>
    """,
    "assets/styles.css": """
        body { color: black; }
    """,
    "auth.json": """
        {"api\\\\.example\\\\.com/private": {"headers": {"Authorization": "Bearer secret"}}}
    """,
    "preprocessors.py": """
        def index():
            def process(context):
                context.setdefault("order", []).append("index")
                return context

            return {
                "resources": {
                    "greeting": "https://api.example.com/greeting",
                    "menu": "https://api.example.com/menu",
                },
                "process": process,
            }


        def nav():
            def process(context):
                context.setdefault("order", []).append("nav")
                return context

            return {
                "resources": {
                    "menu": "https://api.example.com/ignored-menu",
                    "secret": "https://api.example.com/private/data",
                },
                "process": process,
            }


        def item():
            return {"resources": {"item": "https://api.example.com/items/{id}"}}


        PREPROCESSORS = {
            "index.html": index,
            "partials/nav.html": nav,
            "items/{id}.html": item,
        }
    """,
}


@pytest.fixture
def site_dir(tmp_path) -> Path:
    return write_site(tmp_path / "site", SITE_FILES)


@pytest.fixture
def make_site(tmp_path) -> Callable[..., Path]:
    """Write a site from ``{relative path: content}``; ``base=True`` starts from the default site."""

    def factory(files: dict[str, str], *, base: bool = False, name: str = "custom-site") -> Path:
        merged = {**SITE_FILES, **files} if base else files
        return write_site(tmp_path / name, merged)

    return factory
