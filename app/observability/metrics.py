"""Counters, gauges and timings for the refresh pipeline, sent to the log or StatsD."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any

from app.config import settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except ImportError:  # pragma: no cover - statsd is an optional extra
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

METRIC_EVENT = "screener.metric"
_UNSAMPLED_TYPES = frozenset({"gauge"})


class MetricsReporter:
    """Emit screener metrics under one namespace.

    Every event is logged at debug level as ``screener.metric`` with the payload in
    ``extra["metrics"]``. When the StatsD backend is selected and the ``statsd``
    package is installed, events are also forwarded there. Counters and timings
    honour ``sample_rate``; gauges are always sent.
    """

    def __init__(
        self,
        *,
        namespace: str = "screener",
        backend: str = "stdout",
        sample_rate: float = 1.0,
        disabled: bool = False,
        statsd_host: str = "127.0.0.1",
        statsd_port: int = 8125,
        roll: Callable[[], float] = random.random,
    ) -> None:
        self.namespace = namespace.strip(".") or "screener"
        self.backend = backend.lower()
        self.sample_rate = min(max(sample_rate, 0.0), 1.0)
        self.disabled = disabled
        self._roll = roll
        self._statsd = None
        if self.backend == "statsd" and not disabled:
            self._statsd = self._connect_statsd(statsd_host, statsd_port)

    @classmethod
    def from_settings(cls) -> "MetricsReporter":
        return cls(
            namespace=settings.metrics_namespace,
            backend=settings.metrics_backend,
            sample_rate=settings.metrics_sample_rate,
            disabled=settings.metrics_disable,
            statsd_host=settings.metrics_statsd_host,
            statsd_port=settings.metrics_statsd_port,
        )

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags)

    def qualify(self, metric: str) -> str:
        """Prefix ``metric`` with the namespace unless it already carries it."""
        name = (metric or "").strip(".")
        if not name:
            return self.namespace
        if name == self.namespace or name.startswith(f"{self.namespace}."):
            return name
        return f"{self.namespace}.{name}"

    def _emit(
        self, kind: str, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if self.disabled or value is None:
            return
        rate = 1.0 if kind in _UNSAMPLED_TYPES else self.sample_rate
        if rate < 1.0 and self._roll() >= rate:
            return

        name = self.qualify(metric)
        payload: dict[str, Any] = {
            "metric": name,
            "type": kind,
            "value": round(float(value), 4),
            "tags": tags or {},
        }
        if rate < 1.0:
            payload["sample_rate"] = rate
        logger.debug(METRIC_EVENT, extra={"metrics": payload})

        if self._statsd is not None:
            self._forward(kind, name, value, rate)

    def _forward(self, kind: str, name: str, value: float, rate: float) -> None:
        senders = {
            "timing": lambda: self._statsd.timing(name, value, rate=rate),
            "gauge": lambda: self._statsd.gauge(name, value),
            "counter": lambda: self._statsd.incr(name, value, rate=rate),
        }
        try:
            senders[kind]()
        except OSError as exc:
            logger.warning("metrics.backend_error", extra={"metric": name, "error": type(exc).__name__})

    def _connect_statsd(self, host: str, port: int):
        if StatsClient is None:
            logger.warning("metrics.statsd_unavailable", extra={"reason": "statsd package not installed"})
            return None
        try:
            return StatsClient(host=host, port=port, prefix="")
        except OSError as exc:
            logger.warning(
                "metrics.backend_error", extra={"metric": "statsd.init", "error": type(exc).__name__}
            )
            return None


metrics = MetricsReporter.from_settings()
