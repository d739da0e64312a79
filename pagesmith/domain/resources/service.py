"""Stale-while-revalidate access to remote JSON resources.

Lookup order for one resource:
- expand the descriptor against the request parameters (the URL is the key)
- fresh hit: return cached data
- stale hit: return cached data now; the caller that wins ``entry.lock()``
  schedules one background refetch, everybody else just gets the stale value
- miss: fetch while the caller waits, cache only HTTP 200 + valid JSON

Page rendering never sees an exception from here: failures are logged,
counted, and turn into ``{}``.

Known limitation: the cache key is the expanded URL only. Two resources with
the same URL but different auth overlays share one entry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Union

from pagesmith.core.error_handler import safe_background_task
from pagesmith.core.metrics import observe_cache, observe_fetch_error, observe_refresh
from pagesmith.domain.errors import (
    FetchError,
    InvalidResponseError,
    InvalidURLError,
    ResourceError,
    UpstreamStatusError,
)
from pagesmith.domain.resources.cache import CacheEntry, CacheStore
from pagesmith.domain.resources.descriptor import (
    AuthTable,
    ResourceConfig,
    ResourceDescriptor,
    is_url,
)
from pagesmith.domain.resources.expander import ExpandedRequest, expand_request
from pagesmith.domain.resources.fetcher import FetchResult, ResourceFetcher
from pagesmith.domain.resources.freshness import DEFAULT_FRESHNESS, freshness_lifetime

logger = logging.getLogger(__name__)

_ERROR_KINDS = {
    InvalidURLError: "invalid_url",
    FetchError: "fetch",
    InvalidResponseError: "invalid_response",
    UpstreamStatusError: "upstream_status",
}


@dataclass(frozen=True)
class ResourceResponse:
    """What the on-demand resource endpoint serves."""

    data: Any
    status_code: int
    max_age: int
    from_cache: bool = False


class ResourceService:
    def __init__(
        self,
        store: CacheStore,
        fetcher: ResourceFetcher,
        *,
        auth: Optional[AuthTable] = None,
        default_freshness: float = DEFAULT_FRESHNESS,
    ):
        self.store = store
        self.fetcher = fetcher
        self.default_freshness = default_freshness
        self._auth: dict[str, Any] = dict(auth or {})
        self._refreshes: set[asyncio.Task] = set()

    @property
    def auth(self) -> Mapping[str, Any]:
        return self._auth

    def set_auth(self, auth: Optional[AuthTable]) -> None:
        self._auth = dict(auth or {})

    def describe(self, config: Union[ResourceConfig, ResourceDescriptor]) -> ResourceDescriptor:
        return ResourceDescriptor.from_config(config, self._auth)

    async def fetch(
        self,
        config: Union[ResourceConfig, ResourceDescriptor],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Resource data for a page; ``{}`` whenever it cannot be obtained."""

        try:
            descriptor = self.describe(config)
        except TypeError as exc:
            logger.warning("Ignoring resource: %s", exc)
            return {}

        request = expand_request(descriptor, params)
        if request is None:
            logger.debug("Resource has no resolvable url: %r", descriptor.url)
            return {}

        entry = self._lookup(request, descriptor)
        if entry is not None:
            return entry.data

        try:
            result = await self._fetch_and_cache(request, descriptor)
        except ResourceError as exc:
            self._report(exc)
            return {}
        if not result.successful:
            self._report(UpstreamStatusError(request.url, result.status_code, result.data))
        return result.data

    async def fetch_entry(self, url: Optional[str]) -> ResourceResponse:
        """Fetch a raw URL for the resource endpoint.

        Raises:
            InvalidURLError: ``url`` is not an absolute http(s) URL.
            InvalidResponseError: upstream body is not JSON.
            FetchError: upstream could not be reached.
        """

        if not is_url(url):
            raise InvalidURLError(url)
        descriptor = self.describe(url)
        request = expand_request(descriptor, {})
        if request is None:
            raise InvalidURLError(url)

        entry = self._lookup(request, descriptor)
        if entry is not None:
            return ResourceResponse(
                data=entry.data,
                status_code=entry.status_code,
                max_age=entry.max_age(self.store.clock()),
                from_cache=True,
            )

        try:
            result = await self._fetch_and_cache(request, descriptor)
        except ResourceError as exc:
            self._report(exc)
            raise

        now = self.store.clock()
        if result.successful:
            fresh = CacheEntry.from_result(result, default_freshness=self.default_freshness)
            max_age = fresh.max_age(now)
        else:
            self._report(UpstreamStatusError(request.url, result.status_code, result.data))
            max_age = _explicit_max_age(result, now)
        return ResourceResponse(data=result.data, status_code=result.status_code, max_age=max_age)

    async def wait_for_refreshes(self) -> None:
        """Wait until every scheduled background refresh has finished."""

        while self._refreshes:
            await asyncio.gather(*list(self._refreshes), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._refreshes):
            task.cancel()
        await self.wait_for_refreshes()
        await self.fetcher.aclose()

    # ------------------------------------------------------------------

    def _lookup(self, request: ExpandedRequest, descriptor: ResourceDescriptor) -> Optional[CacheEntry]:
        entry = self.store.get(request.key)
        if entry is None:
            observe_cache("miss")
            return None

        if not entry.expired(self.store.clock()):
            observe_cache("hit")
            logger.debug("Resource recovered from cache: %s", request.url)
            return entry

        observe_cache("stale")
        if entry.lock():
            logger.info("Refreshing expired cached resource: %s", request.url)
            safe_background_task(
                "resource_refresh",
                self._refresh(request, descriptor, entry),
                tracked=self._refreshes,
            )
        else:
            logger.debug("Refresh already in flight, serving stale: %s", request.url)
        return entry

    async def _refresh(
        self, request: ExpandedRequest, descriptor: ResourceDescriptor, entry: CacheEntry
    ) -> None:
        try:
            result = await self._fetch_and_cache(request, descriptor)
        except ResourceError as exc:
            observe_refresh("error")
            self._report(exc)
            return
        finally:
            entry.unlock()
        if result.successful:
            observe_refresh("ok")
        else:
            observe_refresh("error")
            self._report(UpstreamStatusError(request.url, result.status_code, result.data))

    async def _fetch_and_cache(
        self, request: ExpandedRequest, descriptor: ResourceDescriptor
    ) -> FetchResult:
        # Entries age on the store clock, whatever clock the fetcher stamps with.
        started = self.store.clock()
        result = replace(await self.fetcher.fetch(request, descriptor), fetched_at=started)
        if result.successful:
            self.store.set(
                request.key,
                CacheEntry.from_result(result, default_freshness=self.default_freshness),
            )
        return result

    def _report(self, exc: ResourceError) -> None:
        kind = next((name for cls, name in _ERROR_KINDS.items() if isinstance(exc, cls)), "other")
        observe_fetch_error(kind)
        logger.warning("Error retrieving resource: %s", exc, extra={"resource_url": exc.url})


def _explicit_max_age(result: FetchResult, now: float) -> int:
    lifetime = freshness_lifetime(result.headers, result.fetched_at)
    if lifetime is None:
        return 0
    return max(0, int(round(result.fetched_at + lifetime - now)))


__all__ = ["ResourceResponse", "ResourceService"]
