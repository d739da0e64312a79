from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from pagesmith.domain.resources.descriptor import ResourceDescriptor, is_url

_PLACEHOLDER = re.compile(r"\{([^}]*)\}")


@dataclass(frozen=True)
class ExpandedRequest:
    """A concrete resource URL; its string form is the cache key."""

    url: str

    @property
    def key(self) -> str:
        return self.url

    def __str__(self) -> str:
        return self.url


def expand_variables(template: str, params: Mapping[str, Any]) -> str:
    """Replace every ``{name}`` with ``params[name]`` or an empty string."""

    def _replace(match: re.Match[str]) -> str:
        value = params.get(match.group(1))
        if value is None or value == "":
            return ""
        return _stringify(value)

    return _PLACEHOLDER.sub(_replace, template)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _query_pairs(key: str, value: Any, params: Mapping[str, Any]) -> Iterable[tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, str):
        return [(key, expand_variables(value, params))]
    if isinstance(value, (list, tuple)):
        return [
            (key, expand_variables(item, params) if isinstance(item, str) else _stringify(item))
            for item in value
            if item is not None
        ]
    return [(key, _stringify(value))]


def expand_request(
    descriptor: ResourceDescriptor,
    params: Optional[Mapping[str, Any]] = None,
) -> Optional[ExpandedRequest]:
    """Resolve a descriptor against request parameters.

    Returns ``None`` when the result is not an absolute http(s) URL. Query
    parameters already present in the URL act as defaults: a same-named entry
    in the descriptor's query never replaces them.
    """

    params = params or {}
    if not is_url(descriptor.url):
        return None

    resolved = expand_variables(descriptor.url, params)
    if not is_url(resolved):
        return None

    parts = urlsplit(resolved)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    present = {key for key, _ in pairs}
    for key, value in descriptor.query.items():
        if key in present:
            continue
        pairs.extend(_query_pairs(key, value, params))

    query = urlencode(pairs, quote_via=quote)
    url = urlunsplit((parts.scheme, parts.netloc, parts.path or "/", query, parts.fragment))
    return ExpandedRequest(url=url)


__all__ = ["ExpandedRequest", "expand_request", "expand_variables"]
