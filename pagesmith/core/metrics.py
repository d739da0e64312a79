"""Prometheus metrics for the resource cache, the worker pool and page renders.

Labels stay low-cardinality on purpose: no resource URLs, no view names with
parameters. Failures of resources and preprocessors never reach the page, so
these counters together with the logs are how they get noticed.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ----------------------------
# Resource cache
# ----------------------------

RESOURCE_CACHE_EVENTS_TOTAL = Counter(
    "resource_cache_events_total",
    "Resource cache lookups by state (hit, stale, miss).",
    labelnames=("state",),
)

RESOURCE_REFRESHES_TOTAL = Counter(
    "resource_refreshes_total",
    "Background refreshes of stale resources by outcome.",
    labelnames=("outcome",),
)

RESOURCE_FETCH_ERRORS_TOTAL = Counter(
    "resource_fetch_errors_total",
    "Resource fetches that could not be used, by error kind.",
    labelnames=("kind",),
)

RESOURCE_FETCH_DURATION_SECONDS = Histogram(
    "resource_fetch_duration_seconds",
    "Upstream resource fetch latency in seconds.",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ----------------------------
# Preprocessor worker pool
# ----------------------------

PREPROCESS_CALLS_TOTAL = Counter(
    "preprocess_calls_total",
    "Preprocessor calls by outcome (ok, error, timeout, crash, closed).",
    labelnames=("outcome",),
)

WORKER_RESTARTS_TOTAL = Counter(
    "worker_restarts_total",
    "Worker unit replacements by reason (exhausted, timeout, crash).",
    labelnames=("reason",),
)

# ----------------------------
# Pages
# ----------------------------

PAGE_RENDERS_TOTAL = Counter(
    "page_renders_total",
    "Page renders by outcome (complete, error, timeout).",
    labelnames=("outcome",),
)


def observe_cache(state: str) -> None:
    RESOURCE_CACHE_EVENTS_TOTAL.labels(state=state).inc()


def observe_fetch_error(kind: str) -> None:
    RESOURCE_FETCH_ERRORS_TOTAL.labels(kind=kind).inc()


def observe_refresh(outcome: str) -> None:
    RESOURCE_REFRESHES_TOTAL.labels(outcome=outcome).inc()


def observe_preprocess(outcome: str) -> None:
    PREPROCESS_CALLS_TOTAL.labels(outcome=outcome).inc()


def observe_worker_restart(reason: str) -> None:
    WORKER_RESTARTS_TOTAL.labels(reason=reason).inc()


def observe_page(outcome: str) -> None:
    PAGE_RENDERS_TOTAL.labels(outcome=outcome).inc()


__all__ = [
    "PAGE_RENDERS_TOTAL",
    "PREPROCESS_CALLS_TOTAL",
    "RESOURCE_CACHE_EVENTS_TOTAL",
    "RESOURCE_FETCH_DURATION_SECONDS",
    "RESOURCE_FETCH_ERRORS_TOTAL",
    "RESOURCE_REFRESHES_TOTAL",
    "WORKER_RESTARTS_TOTAL",
    "observe_cache",
    "observe_fetch_error",
    "observe_page",
    "observe_preprocess",
    "observe_refresh",
    "observe_worker_restart",
]
