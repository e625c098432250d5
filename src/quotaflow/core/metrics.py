"""Prometheus metrics for the quota and subscription engine."""

from collections.abc import Iterator
from contextlib import contextmanager
from time import time

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
request_latency_seconds = Histogram(
    "quotaflow_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["endpoint", "method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

request_total = Counter(
    "quotaflow_request_total",
    "Total number of HTTP requests",
    ["endpoint", "method", "status"],
)

active_requests = Gauge(
    "quotaflow_active_requests",
    "Number of active HTTP requests",
)

# Quota metrics
quota_checks_total = Counter(
    "quotaflow_quota_checks_total",
    "Quota checks by feature and outcome",
    ["feature", "allowed"],
)

quota_increments_total = Counter(
    "quotaflow_quota_increments_total",
    "Recorded feature consumptions",
    ["feature"],
)

quota_write_conflicts_total = Counter(
    "quotaflow_quota_write_conflicts_total",
    "Version-guarded quota writes that had to be retried",
)

# Lifecycle metrics
webhook_events_total = Counter(
    "quotaflow_webhook_events_total",
    "Billing webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)

tier_transitions_total = Counter(
    "quotaflow_tier_transitions_total",
    "Applied tier transitions by reason",
    ["reason"],
)

archive_failures_total = Counter(
    "quotaflow_archive_failures_total",
    "Quota archive writes that failed before a transition",
)

sweep_duration_seconds = Histogram(
    "quotaflow_sweep_duration_seconds",
    "Duration of periodic expired-subscription sweeps",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


def track_quota_check(feature: str, allowed: bool) -> None:
    """Track a quota check outcome.

    Args:
        feature: Feature slug that was checked
        allowed: Whether the action was allowed
    """
    quota_checks_total.labels(feature=feature, allowed=str(allowed).lower()).inc()


def track_quota_increment(feature: str) -> None:
    quota_increments_total.labels(feature=feature).inc()


def track_webhook_event(event_type: str, outcome: str) -> None:
    """Track a webhook delivery.

    Args:
        event_type: Event name from the payload (``unrecognized`` for others)
        outcome: One of ``processed``, ``skipped``, ``ignored``, ``duplicate``
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_tier_transition(reason: str) -> None:
    tier_transitions_total.labels(reason=reason).inc()


@contextmanager
def track_time(metric: Histogram, **labels: str) -> Iterator[None]:
    """Context manager to track execution time of a code block.

    Args:
        metric: Prometheus Histogram metric to observe
        **labels: Labels to apply to the metric

    Example:
        with track_time(sweep_duration_seconds):
            await reconciler.archive_expired_subscriptions()
    """
    start = time()
    try:
        yield
    finally:
        duration = time() - start
        if labels:
            metric.labels(**labels).observe(duration)
        else:
            metric.observe(duration)
