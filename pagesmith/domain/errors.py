from __future__ import annotations

from typing import Any, Mapping, Optional


class PagesmithError(Exception):
    """Base class for every error raised by pagesmith."""


class ResourceError(PagesmithError):
    """A remote JSON resource could not be used."""

    def __init__(self, url: Optional[str], message: str):
        self.url = url
        super().__init__(message)


class InvalidURLError(ResourceError):
    """Resource URL is missing, not http(s), or malformed."""

    def __init__(self, url: Optional[str]):
        super().__init__(url, f"Invalid resource url: {url!r}")


class FetchError(ResourceError):
    """Network or transport failure while requesting a resource."""

    def __init__(self, url: str, reason: str):
        self.reason = reason
        super().__init__(url, f"Could not fetch {url}: {reason}")


class InvalidResponseError(ResourceError):
    """Upstream body is not valid UTF-8 JSON.

    Status and headers are kept so callers can still report freshness.
    """

    def __init__(
        self,
        url: str,
        detail: str,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.detail = detail
        self.status_code = status_code
        self.headers = dict(headers or {})
        super().__init__(url, f"Invalid JSON: {detail}")


class UpstreamStatusError(ResourceError):
    """Upstream answered with a status other than 200; the body is never cached."""

    def __init__(self, url: str, status_code: int, data: Any = None):
        self.status_code = status_code
        self.data = data
        super().__init__(url, f"Upstream returned HTTP {status_code} for {url}")


class PreprocessError(PagesmithError):
    """A user preprocessor raised, or its worker could not finish the call."""

    def __init__(self, view: str, message: str, *, remote_traceback: Optional[str] = None):
        self.view = view
        self.remote_traceback = remote_traceback
        super().__init__(message)


class WorkerTimeoutError(PreprocessError):
    def __init__(self, view: str, seconds: float):
        self.seconds = seconds
        super().__init__(view, f"Preprocessor {view!r} exceeded {seconds:.2f}s and its worker was killed")


class WorkerCrashedError(PreprocessError):
    def __init__(self, view: str, exitcode: Optional[int] = None):
        self.exitcode = exitcode
        super().__init__(view, f"Worker died while running preprocessor {view!r} (exit code {exitcode})")


class PoolClosedError(PreprocessError):
    def __init__(self, view: str):
        super().__init__(view, f"Worker pool is shut down; preprocessor {view!r} was not run")


__all__ = [
    "FetchError",
    "InvalidResponseError",
    "InvalidURLError",
    "PagesmithError",
    "PoolClosedError",
    "PreprocessError",
    "ResourceError",
    "UpstreamStatusError",
    "WorkerCrashedError",
    "WorkerTimeoutError",
]
