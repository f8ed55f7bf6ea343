"""Metrics and security-audit instrumentation with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Callable, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Histogram as PromHistogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

SECURITY_LOGGER_NAME = "chatarbor.security"
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)


def _format_fields(fields: dict[str, Any]) -> str:
    return " ".join(
        f"{key}={_stringify(value)}"
        for key, value in sorted(fields.items())
        if value is not None
    )


def _stringify(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
    return str(value)


def audit_security_event(event: str, **fields: Any) -> None:
    """Record a security rejection on the dedicated audit logger.

    The detail logged here (target URL, resolved address, matched pattern) is
    never returned to the requester.
    """

    details = _format_fields(fields)
    message = f"security.{event}"
    if details:
        message = f"{message} {details}"
    security_logger.warning(message)


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "chatarbor",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "chatarbor"
        self._logger = logger or logging.getLogger("chatarbor.metrics")
        self._prometheus_enabled = bool(prometheus_enabled)
        self._prom_registry = registry if registry is not None else (
            CollectorRegistry() if self._prometheus_enabled else None
        )
        self._prom_metrics: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)  # type: ignore[arg-type]

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._observe(PromCounter, "counter", metric, clean_tags, lambda m: m.inc(float(max(value, 0))))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        seconds = max(duration_seconds, 0.0)
        self._observe(PromHistogram, "duration", metric, clean_tags, lambda m: m.observe(seconds))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        """Context manager that records execution time for the wrapped block."""

        if not self._enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = " ".join(part for part in (_format_fields(fields), _format_fields(tags)) if part)
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {segments}"
        self._logger.info(message)

    def _observe(
        self,
        factory: Callable[..., Any],
        kind: str,
        metric: str,
        tags: dict[str, Any],
        apply: Callable[[Any], None],
    ) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags.keys()))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        prom_key = (kind, metric, label_names)
        collector = self._prom_metrics.get(prom_key)
        if collector is None:
            collector = factory(
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            self._prom_metrics[prom_key] = collector
        if label_names:
            label_values = {name: _stringify(tags[key]) for name, key in zip(label_names, label_keys)}
            apply(collector.labels(**label_values))
        else:
            apply(collector)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        sanitized = _PROM_NAME_RE.sub("_", label)
        return sanitized or "label"


__all__ = ["MetricsRecorder", "SECURITY_LOGGER_NAME", "audit_security_event", "security_logger"]
