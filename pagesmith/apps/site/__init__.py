"""Site application exports."""

from importlib import import_module
from typing import TYPE_CHECKING

__all__ = ["Site", "create_app"]

if TYPE_CHECKING:  # pragma: no cover
    from .app import create_app
    from .site import Site

_MODULES = {"Site": ".site", "create_app": ".app"}


def __getattr__(name: str):
    if name in _MODULES:
        module = import_module(_MODULES[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
