"""Metrics emitted as structured log lines, optionally mirrored to Prometheus."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


class MetricsRecorder:
    """Record counters, gauges and timings for uploads, polling and live sessions."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "sopdesk",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: Any = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "sopdesk"
        self._logger = logger or logging.getLogger("sopdesk.metrics")
        use_prometheus = bool(prometheus_enabled)
        if use_prometheus and registry is None:
            registry = CollectorRegistry()
        self._registry = registry if use_prometheus else None
        self._collectors: dict[tuple[str, str, tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        if not self._enabled:
            return
        tags = _clean(tags)
        self._log(metric, {"value": int(value)}, tags)
        if self.prometheus_enabled:
            self._collector("counter", metric, tags).inc(float(max(int(value), 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        tags = _clean(tags)
        self._log(metric, {"value": value}, tags)
        if self.prometheus_enabled:
            self._collector("gauge", metric, tags).set(float(value))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Record a duration; logs carry milliseconds, Prometheus observes seconds."""

        if not self._enabled:
            return
        tags = _clean(tags)
        seconds = max(duration_seconds, 0.0)
        self._log(metric, {"duration_ms": round(seconds * 1000.0, 4)}, tags)
        if self.prometheus_enabled:
            self._collector("histogram", metric, tags).observe(seconds)

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _log(self, metric: str, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        parts = [f"{key}={_stringify(value)}" for key, value in sorted(fields.items())]
        parts.extend(f"{key}={_stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if parts:
            message = f"{message} {' '.join(parts)}"
        self._logger.info(message)

    def _collector(self, kind: str, metric: str, tags: dict[str, Any]):
        keys = tuple(sorted(tags))
        labels = tuple(_PROM_NAME_RE.sub("_", key) or "label" for key in keys)
        cache_key = (kind, metric, labels)
        collector = self._collectors.get(cache_key)
        if collector is None:
            factory = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}[kind]
            collector = factory(
                self._prom_name(metric),
                f"{metric} {kind}",
                labelnames=list(labels),
                registry=self._registry,
            )
            self._collectors[cache_key] = collector
        if not labels:
            return collector
        return collector.labels(**{label: _stringify(tags[key]) for label, key in zip(labels, keys)})

    def _prom_name(self, metric: str) -> str:
        namespace = _PROM_NAME_RE.sub("_", self._namespace)
        return f"{namespace}_{_PROM_NAME_RE.sub('_', metric)}".strip("_")


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in tags.items() if value is not None}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)


__all__ = ["MetricsRecorder"]
