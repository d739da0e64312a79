from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import httpx

from pagesmith.core.metrics import RESOURCE_FETCH_DURATION_SECONDS
from pagesmith.domain.errors import FetchError, InvalidResponseError, InvalidURLError
from pagesmith.domain.resources.descriptor import ResourceDescriptor
from pagesmith.domain.resources.expander import ExpandedRequest

logger = logging.getLogger(__name__)

SUCCESSFUL_STATUS_CODES = frozenset({200})
DEFAULT_ENCODING = "utf-8"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status_code: int
    data: Any
    fetched_at: float
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def successful(self) -> bool:
        return self.status_code in SUCCESSFUL_STATUS_CODES


class ResourceFetcher:
    """Issues one GET per expanded request and parses the JSON body.

    gzip/deflate bodies are decoded while streaming (httpx content decoding)
    before the bytes are buffered and parsed.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, request: ExpandedRequest, descriptor: ResourceDescriptor) -> FetchResult:
        url = request.url
        fetched_at = self._clock()
        started = time.perf_counter()
        try:
            async with self._client.stream(
                "GET",
                url,
                headers=dict(descriptor.headers),
                timeout=descriptor.timeout or self._timeout,
            ) as response:
                body = b"".join([chunk async for chunk in response.aiter_bytes()])
        except httpx.DecodingError as exc:
            raise InvalidResponseError(url, f"could not decompress body: {exc}") from exc
        except httpx.InvalidURL as exc:
            raise InvalidURLError(url) from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, str(exc) or type(exc).__name__) from exc
        except (UnicodeError, ValueError) as exc:
            # Raised while building the request, e.g. a header value that is not ASCII.
            raise FetchError(url, f"invalid request: {exc}") from exc
        finally:
            RESOURCE_FETCH_DURATION_SECONDS.observe(time.perf_counter() - started)

        headers = {key.lower(): value for key, value in response.headers.items()}
        logger.info("Requested resource: [%s] %s", response.status_code, url, extra={"resource_url": url})

        try:
            data = json.loads(body.decode(DEFAULT_ENCODING))
        except UnicodeDecodeError as exc:
            raise InvalidResponseError(
                url, str(exc), status_code=response.status_code, headers=headers
            ) from exc
        except json.JSONDecodeError as exc:
            raise InvalidResponseError(
                url, exc.msg, status_code=response.status_code, headers=headers
            ) from exc

        return FetchResult(
            url=url,
            status_code=response.status_code,
            data=data,
            fetched_at=fetched_at,
            headers=headers,
        )


__all__ = ["FetchResult", "ResourceFetcher", "SUCCESSFUL_STATUS_CODES"]
