"""Resource descriptors: what a page declares it needs before rendering.

A resource is configured either as a bare URL string or as a mapping::

    {"url": "https://api.example.com/items/{id}", "query": {"lang": "{lang}"}}

Auth overlays are a table of ``regex -> partial options``. Every pattern that
matches the (template) URL case-insensitively is deep-merged into the
resource, in table order.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

ACCEPT_ENCODING = "gzip,deflate"

ResourceConfig = Union[str, Mapping[str, Any]]
AuthTable = Mapping[str, Mapping[str, Any]]


def is_url(value: Any) -> bool:
    """True for strings that look like an absolute http(s) URL with a host."""

    if not isinstance(value, str) or not value:
        return False
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return False
    return parts.scheme.lower() in {"http", "https"} and bool(parts.netloc)


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``overlay`` merged in; nested mappings merge, the rest is replaced."""

    merged = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_auth(config: Mapping[str, Any], auth: Optional[AuthTable]) -> dict[str, Any]:
    url = str(config.get("url") or "")
    merged = dict(config)
    for pattern, overlay in (auth or {}).items():
        try:
            matcher = re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            logger.warning("Skipping invalid auth pattern %r: %s", pattern, exc)
            continue
        if not isinstance(overlay, Mapping):
            logger.warning("Skipping auth pattern %r: overlay must be an object", pattern)
            continue
        if matcher.search(url):
            merged = deep_merge(merged, overlay)
    return merged


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


@dataclass(frozen=True)
class ResourceDescriptor:
    url: str
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        headers = dict(self.headers)
        if not _has_header(headers, "Accept-Encoding"):
            headers["Accept-Encoding"] = ACCEPT_ENCODING
        object.__setattr__(self, "headers", MappingProxyType(headers))
        object.__setattr__(self, "query", MappingProxyType(dict(self.query)))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    @property
    def timeout(self) -> Optional[float]:
        value = self.options.get("timeout")
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_config(
        cls,
        config: Union[ResourceConfig, "ResourceDescriptor"],
        auth: Optional[AuthTable] = None,
    ) -> "ResourceDescriptor":
        if isinstance(config, ResourceDescriptor):
            return config
        if isinstance(config, str):
            config = {"url": config}
        elif not isinstance(config, Mapping):
            raise TypeError(f"Resource config must be a URL or an object, got {type(config).__name__}")

        merged = apply_auth(config, auth)
        query = merged.pop("query", None) or {}
        headers = merged.pop("headers", None) or {}
        url = merged.pop("url", None)
        if not isinstance(query, Mapping):
            logger.warning("Ignoring non-object query for resource %r", url)
            query = {}
        if not isinstance(headers, Mapping):
            logger.warning("Ignoring non-object headers for resource %r", url)
            headers = {}
        return cls(
            url=str(url or ""),
            query=query,
            headers={str(k): str(v) for k, v in headers.items()},
            options=merged,
        )


def build_resources(
    resources: Optional[Mapping[str, ResourceConfig]],
    auth: Optional[AuthTable] = None,
) -> dict[str, ResourceDescriptor]:
    """Turn a ``name -> config`` mapping into descriptors, skipping unusable entries."""

    result: dict[str, ResourceDescriptor] = {}
    for name, config in (resources or {}).items():
        try:
            result[name] = ResourceDescriptor.from_config(config, auth)
        except TypeError as exc:
            logger.warning("Ignoring resource %r: %s", name, exc)
    return result


__all__ = [
    "ACCEPT_ENCODING",
    "AuthTable",
    "ResourceConfig",
    "ResourceDescriptor",
    "apply_auth",
    "build_resources",
    "deep_merge",
    "is_url",
]
