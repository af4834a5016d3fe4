# chaoscanvas/exporter.py
# Prometheus metrics for the canvas economy.
#
# Metrics are created once per process at import time and shared by every app
# instance (tests build several apps in one process). Label sets are small and
# controlled: route templates, transaction kinds, rejection reasons.
#
# The ASGI app exposes them on GET /metrics; this module never starts its own
# HTTP server.

from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


REQUESTS = Counter(
    "chaos_requests_total",
    "HTTP requests by route template and status code",
    ["route", "status"],
)

REQUEST_LATENCY = Histogram(
    "chaos_request_latency_seconds",
    "HTTP request latency by route template",
    ["route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

CONTRIBUTIONS_CREATED = Counter(
    "chaos_contributions_created_total",
    "Contributions created by content kind",
    ["content_type"],
)

BOOSTS = Counter(
    "chaos_boosts_total",
    "Successful boosts",
)

COINS_MOVED = Counter(
    "chaos_coins_moved_total",
    "Absolute ChaosCoins moved by transaction kind",
    ["kind"],
)

REJECTIONS = Counter(
    "chaos_rejections_total",
    "Operations refused before mutation, by error kind",
    ["operation", "reason"],
)

NOTIFIER_DELIVERIES = Counter(
    "chaos_notifier_deliveries_total",
    "Change notifier sends by outcome",
    ["outcome"],
)


def record_rejection(operation: str, reason: str) -> None:
    REJECTIONS.labels(operation=operation, reason=reason).inc()


def record_coins(kind: str, amount: int) -> None:
    if amount:
        COINS_MOVED.labels(kind=kind).inc(abs(int(amount)))


def render_latest(registry: Optional[CollectorRegistry] = None) -> tuple[bytes, str]:
    """Return (payload, content_type) for a /metrics response."""
    return generate_latest(registry or REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "REQUESTS",
    "REQUEST_LATENCY",
    "CONTRIBUTIONS_CREATED",
    "BOOSTS",
    "COINS_MOVED",
    "REJECTIONS",
    "NOTIFIER_DELIVERIES",
    "record_rejection",
    "record_coins",
    "render_latest",
]
