"""Prometheus metrics shared by the web app and generation workers."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"
_START_TIME = time.time()


def env_label() -> str:
    return _ENV


generation_requests_total = Counter(
    "generation_requests_total",
    "Generation submissions grouped by service, kind and outcome",
    labelnames=("service", "kind", "result", "env"),
    registry=REGISTRY,
)

generation_callbacks_total = Counter(
    "generation_callbacks_total",
    "Provider callbacks processed",
    labelnames=("service", "status", "env"),
    registry=REGISTRY,
)

generation_poll_total = Counter(
    "generation_poll_total",
    "Status poll steps grouped by mapped state",
    labelnames=("service", "state", "env"),
    registry=REGISTRY,
)

generation_latency_seconds = Histogram(
    "generation_latency_seconds",
    "Latency from submission to terminal state",
    labelnames=("service", "env"),
    buckets=(5, 15, 30, 60, 120, 180, 300, 420, 600, 900),
    registry=REGISTRY,
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the per-user rate limiter",
    labelnames=("service", "env"),
    registry=REGISTRY,
)

provider_http_requests_total = Counter(
    "provider_http_requests_total",
    "Outbound provider HTTP requests grouped by operation and status",
    labelnames=("provider", "op", "status"),
    registry=REGISTRY,
)

generations_in_flight = Gauge(
    "generations_in_flight",
    "Generations submitted but not yet terminal",
    labelnames=("service",),
    registry=REGISTRY,
)

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Seconds since the process started",
    registry=REGISTRY,
)


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "env_label",
    "generation_requests_total",
    "generation_callbacks_total",
    "generation_poll_total",
    "generation_latency_seconds",
    "rate_limit_rejections_total",
    "provider_http_requests_total",
    "generations_in_flight",
    "process_uptime_seconds",
    "render_metrics",
]
