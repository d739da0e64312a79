"""Freshness lifetime of a response, from its HTTP caching headers.

Precedence (RFC 9111 section 4.2.1, shared cache):
1. ``no-store`` / ``no-cache``  -> 0 (always revalidate)
2. ``s-maxage``
3. ``max-age``
4. ``Expires`` minus ``Date`` (or minus the fetch time when ``Date`` is absent)

Anything else has no explicit freshness and the caller applies its default.
"""

from __future__ import annotations

from email.utils import parsedate_to_datetime
from typing import Mapping, Optional

DEFAULT_FRESHNESS = 60.0


def _lower(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def parse_cache_control(value: str) -> dict[str, Optional[str]]:
    directives: dict[str, Optional[str]] = {}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, arg = part.partition("=")
        directives[name.strip().lower()] = arg.strip().strip('"') if sep else None
    return directives


def _seconds(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return max(0.0, float(int(raw)))
    except ValueError:
        return None


def _http_date(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return parsedate_to_datetime(raw).timestamp()
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def freshness_lifetime(headers: Optional[Mapping[str, str]], now: float) -> Optional[float]:
    """Seconds the response stays fresh, or ``None`` when the headers say nothing."""

    lowered = _lower(headers)
    cache_control = parse_cache_control(lowered.get("cache-control", ""))

    if "no-store" in cache_control or "no-cache" in cache_control:
        return 0.0
    for directive in ("s-maxage", "max-age"):
        if directive in cache_control:
            seconds = _seconds(cache_control[directive])
            # A malformed max-age means the response is stale.
            return seconds if seconds is not None else 0.0

    if "expires" in lowered:
        expires = _http_date(lowered["expires"])
        if expires is None:
            return 0.0
        date = _http_date(lowered.get("date"))
        return max(0.0, expires - (date if date is not None else now))
    return None


def compute_expiry(
    headers: Optional[Mapping[str, str]],
    fetched_at: float,
    default: float = DEFAULT_FRESHNESS,
) -> float:
    """Absolute time (same clock as ``fetched_at``) at which a response goes stale."""

    lifetime = freshness_lifetime(headers, fetched_at)
    return fetched_at + (default if lifetime is None else lifetime)


__all__ = ["DEFAULT_FRESHNESS", "compute_expiry", "freshness_lifetime", "parse_cache_control"]
