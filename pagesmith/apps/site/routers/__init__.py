"""Exports for site routers."""

from . import api, metrics, pages  # noqa: F401

__all__ = ["api", "metrics", "pages"]
