"""Loading of a site's ``preprocessors.py``.

The file maps view paths to factories::

    PREPROCESSORS = {
        "index.html": lambda: {"resources": {...}, "process": process},
        "partials/nav.html": lambda: nav_module,
    }

A factory returns a mapping or an object (typically a module) exposing
optional ``resources`` and ``process``. The host only reads ``resources``;
``process`` always runs inside a worker unit, which loads the file again.
"""

from __future__ import annotations

import contextlib
import importlib.machinery
import importlib.util
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Iterator, Mapping, Optional

from pagesmith.domain.errors import PreprocessError
from pagesmith.domain.resources.descriptor import AuthTable, ResourceDescriptor, build_resources

logger = logging.getLogger(__name__)

REGISTRY_NAMES = ("PREPROCESSORS", "preprocessors")

# Names of modules that were first imported from a site directory while one of
# its files was being loaded. Only these are evicted before the next load.
_site_modules: set[str] = set()

_INSTALLED_DIRS = frozenset({"site-packages", "dist-packages"})


class _FreshSourceLoader(importlib.machinery.SourceFileLoader):
    """Compiles from source on every load; bytecode caches are neither read nor written.

    A cached .pyc can hide an edit made within the same second.
    """

    def get_code(self, fullname):
        path = self.get_filename(fullname)
        return self.source_to_code(self.get_data(path), path)


def _is_site_module(module: Any, site_dir: Path) -> bool:
    module_file = getattr(module, "__file__", None)
    if not module_file:
        return False
    try:
        relative = Path(module_file).resolve().relative_to(site_dir)
    except ValueError:
        return False
    return not _INSTALLED_DIRS.intersection(relative.parts)


def forget_site_modules() -> None:
    """Drop helper modules imported from a site so the next import rereads them."""

    while _site_modules:
        sys.modules.pop(_site_modules.pop(), None)


@contextlib.contextmanager
def site_imports(site_dir: Path) -> Iterator[None]:
    """Make ``site_dir`` importable for the duration of the block.

    ``sys.path`` is restored on exit. Modules the block imports from the site
    itself are remembered for :func:`forget_site_modules`; everything else it
    imports, including packages installed inside the site, is left cached.
    """

    site_dir = Path(site_dir).resolve()
    entry = str(site_dir)
    inserted = entry not in sys.path
    if inserted:
        sys.path.insert(0, entry)
    # Tracked names count as new even when cached: an inner load may reimport them.
    before = set(sys.modules) - _site_modules
    try:
        yield
    finally:
        _site_modules.update(
            name
            for name in set(sys.modules) - before
            if _is_site_module(sys.modules.get(name), site_dir)
        )
        if inserted:
            with contextlib.suppress(ValueError):
                sys.path.remove(entry)


def load_module(path: Path) -> ModuleType:
    """Execute ``path`` as a brand-new module object, bypassing ``sys.modules``."""

    path = Path(path).resolve()
    forget_site_modules()
    importlib.invalidate_caches()

    name = f"_pagesmith_site_{uuid.uuid4().hex}"
    loader = _FreshSourceLoader(name, str(path))
    spec = importlib.util.spec_from_file_location(name, path, loader=loader)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load preprocessors from {path}")
    module = importlib.util.module_from_spec(spec)
    with site_imports(path.parent):
        spec.loader.exec_module(module)
    return module


def member(definition: Any, name: str) -> Any:
    if definition is None:
        return None
    if isinstance(definition, Mapping):
        return definition.get(name)
    return getattr(definition, name, None)


def factories(module: ModuleType) -> Mapping[str, Callable[[], Any]]:
    for attr in REGISTRY_NAMES:
        registry = getattr(module, attr, None)
        if isinstance(registry, Mapping):
            return registry
    return {}


@dataclass
class Preprocessor:
    """One view's declared resources plus a handle to run its ``process`` remotely."""

    view: str
    module_path: str
    resources: dict[str, ResourceDescriptor] = field(default_factory=dict)
    has_process: bool = False

    async def process(self, pool, context: Any) -> Any:
        """Run this view's transform in ``pool``.

        Errors never propagate: the input context is returned unchanged.
        """

        if not self.has_process:
            return context
        try:
            return await pool.invoke(self.module_path, self.view, context)
        except PreprocessError as exc:
            if exc.remote_traceback:
                logger.error("Preprocessor Error:\n%s", exc.remote_traceback, extra={"view": self.view})
            else:
                logger.error("Preprocessor Error: %s", exc, extra={"view": self.view})
            return context


def load_preprocessors(
    path: Path,
    auth: Optional[AuthTable] = None,
) -> dict[str, Preprocessor]:
    """Read every view's definition from ``path``. A missing or broken file yields ``{}``."""

    path = Path(path)
    if not path.exists():
        return {}
    try:
        module = load_module(path)
    except Exception:
        logger.exception("Error: could not load %s", path.name)
        forget_site_modules()
        return {}

    result: dict[str, Preprocessor] = {}
    try:
        with site_imports(path.resolve().parent):
            for view, factory in factories(module).items():
                try:
                    definition = factory() if callable(factory) else factory
                except Exception:
                    logger.exception("Error: preprocessor factory for %r failed", view)
                    continue
                resources = member(definition, "resources")
                result[view] = Preprocessor(
                    view=view,
                    module_path=str(path.resolve()),
                    resources=build_resources(resources if isinstance(resources, Mapping) else None, auth),
                    has_process=callable(member(definition, "process")),
                )
    finally:
        # The host only needed the declarations; transforms import afresh in the units.
        forget_site_modules()
    logger.info("Loaded %d preprocessors from %s", len(result), path.name)
    return result


__all__ = [
    "Preprocessor",
    "factories",
    "forget_site_modules",
    "load_module",
    "load_preprocessors",
    "member",
    "site_imports",
]
