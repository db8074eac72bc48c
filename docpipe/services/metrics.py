"""Prometheus metrics for the document pipeline.

Three families, all labelled by ``stage`` and ``name``:

* ``docpipe_stage_latency_seconds``: analysis call durations per model.
* ``docpipe_events_total``: job lifecycle and model attempt counters.
* ``docpipe_pool_jobs``: current worker pool occupancy (active, queued, delayed).
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import PlainTextResponse

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

_LABELS = ["stage", "name"]

_STAGE_LATENCY = Histogram(
    "docpipe_stage_latency_seconds",
    "Latency of pipeline stages in seconds",
    _LABELS,
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 210, 300),
)
_EVENTS = Counter("docpipe_events_total", "Document pipeline events", _LABELS)
_POOL_JOBS = Gauge("docpipe_pool_jobs", "Jobs currently held by the worker pool", _LABELS)


def _stage(labels: dict[str, str]) -> str:
    return labels.get("stage", "unknown")


class PrometheusMetrics(MetricsClient):
    """Process-wide Prometheus client; use `default()` to share one instance."""

    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        _STAGE_LATENCY.labels(stage=_stage(labels), name=name).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        _EVENTS.labels(stage=_stage(labels), name=name).inc(amount)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        _POOL_JOBS.labels(stage=_stage(labels), name=name).set(value)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE

    @classmethod
    def instrument_app(cls, app: Any) -> "PrometheusMetrics":
        """Mount ``/metrics`` once and store the shared client on ``app.state``."""
        metrics = cls.default()
        if getattr(app.state, "_prometheus_instrumented", False):
            return metrics

        @app.get("/metrics", include_in_schema=False)
        async def _metrics_endpoint():  # pragma: no cover - passthrough
            return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

        app.state._prometheus_instrumented = True
        app.state.metrics = metrics
        return metrics


class NullMetrics(MetricsClient):
    """Used when ENABLE_METRICS is off."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Gauge ignored: %s=%s labels=%s", name, value, labels)


__all__ = ["PrometheusMetrics", "NullMetrics"]
