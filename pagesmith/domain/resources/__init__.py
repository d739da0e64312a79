"""Remote JSON resources: descriptors, URL expansion, fetching and caching."""

from pagesmith.domain.resources.cache import CacheEntry, CacheStore
from pagesmith.domain.resources.descriptor import ResourceDescriptor, build_resources, is_url
from pagesmith.domain.resources.expander import ExpandedRequest, expand_request, expand_variables
from pagesmith.domain.resources.fetcher import FetchResult, ResourceFetcher
from pagesmith.domain.resources.service import ResourceResponse, ResourceService

__all__ = [
    "CacheEntry",
    "CacheStore",
    "ExpandedRequest",
    "FetchResult",
    "ResourceDescriptor",
    "ResourceFetcher",
    "ResourceResponse",
    "ResourceService",
    "build_resources",
    "expand_request",
    "expand_variables",
    "is_url",
]
