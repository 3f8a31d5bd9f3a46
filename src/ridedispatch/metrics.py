"""Prometheus metrics for the dispatch core."""

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

# Use a separate registry to avoid default Python metrics
REGISTRY = CollectorRegistry()

rides_requested = Counter(
    "dispatch_rides_requested_total",
    "Rides created in REQUESTED state",
    ["ride_type"],
    registry=REGISTRY,
)

requests_fanned_out = Counter(
    "dispatch_ride_requests_sent_total",
    "Per-driver ride requests created during fan-out",
    registry=REGISTRY,
)

dispatch_outcomes = Counter(
    "dispatch_match_outcomes_total",
    "Result of match_and_dispatch calls",
    ["outcome"],
    registry=REGISTRY,
)

acceptances = Counter(
    "dispatch_acceptances_total",
    "Accept attempts by result",
    ["result"],
    registry=REGISTRY,
)

request_responses = Counter(
    "dispatch_request_responses_total",
    "Ride requests that left PENDING, by terminal status",
    ["status"],
    registry=REGISTRY,
)

ride_transitions = Counter(
    "dispatch_ride_transitions_total",
    "Ride lifecycle transitions applied",
    ["status"],
    registry=REGISTRY,
)

store_retries = Counter(
    "dispatch_store_retries_total",
    "Retried calls to backing stores after a transient failure",
    ["store"],
    registry=REGISTRY,
)

geo_index_fallbacks = Counter(
    "dispatch_geo_index_fallbacks_total",
    "Candidate searches served by the Ledger bounding-box scan",
    registry=REGISTRY,
)

notifier_failures = Counter(
    "dispatch_notifier_failures_total",
    "Notifications that raised and were dropped",
    ["event"],
    registry=REGISTRY,
)

store_latency = Histogram(
    "dispatch_store_latency_seconds",
    "Latency of calls to backing stores",
    ["store"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=REGISTRY,
)


@contextmanager
def observe_store_latency(store: str) -> Iterator[None]:
    """Time a block of store I/O, including blocks that raise."""
    start = time.perf_counter()
    try:
        yield
    finally:
        store_latency.labels(store=store).observe(time.perf_counter() - start)


def generate_metrics() -> bytes:
    """Render all dispatch metrics in Prometheus exposition format."""
    return generate_latest(REGISTRY)
