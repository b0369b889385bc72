"""
JSON event logging and an in-process Prometheus registry.

Every log line carries ts, level, event and the request_id of the HTTP request
that produced it (None for background workers).
"""
import json
import logging
import os
from bisect import bisect_left
from collections import defaultdict
from contextvars import ContextVar
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, Optional, Tuple

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

LabelKey = Tuple[Tuple[str, str], ...]

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


class StructuredLogger:

    def __init__(self, name: str = "fleetlink"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(_LEVELS.get(os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log_event(self, event: str, level: str = "INFO", **fields) -> None:
        """
        Emit one JSON line.

        Args:
            event: Dotted event name, e.g. "pairing.code.issued" or "command.dispatch.sent"
            level: DEBUG, INFO, WARN or ERROR
            **fields: Event-specific fields; non-JSON values are rendered with str()
        """
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "request_id": request_id_var.get(),
        }
        entry.update(fields)
        self.logger.log(_LEVELS.get(level, logging.INFO), json.dumps(entry, default=str))


class _Histogram:
    __slots__ = ("bucket_counts", "count", "total")

    def __init__(self, bounds: int):
        self.bucket_counts = [0] * bounds
        self.count = 0
        self.total = 0.0


class MetricsCollector:
    """
    Counters, gauges and fixed-bucket histograms for /metrics.
    Histograms keep per-bucket counts only, so memory stays flat under load.
    """

    def __init__(self, latency_buckets: Iterable[float] = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)):
        self._lock = Lock()
        self.latency_buckets = sorted(latency_buckets)
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: Dict[str, Dict[LabelKey, _Histogram]] = defaultdict(dict)

    @staticmethod
    def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
        return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        with self._lock:
            self._counters[metric_name][self._key(labels)] += value

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._gauges[metric_name][self._key(labels)] = value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            series = self._histograms[metric_name].get(key)
            if series is None:
                series = self._histograms[metric_name][key] = _Histogram(len(self.latency_buckets))
            index = bisect_left(self.latency_buckets, value)
            if index < len(self.latency_buckets):
                series.bucket_counts[index] += 1
            series.count += 1
            series.total += value

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(metric_name, {}).get(self._key(labels), 0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    @staticmethod
    def _series(name: str, key: Iterable[Tuple[str, str]], value) -> str:
        rendered = ",".join(f'{k}="{v}"' for k, v in key)
        return f"{name}{{{rendered}}} {value}" if rendered else f"{name} {value}"

    def get_prometheus_text(self) -> str:
        lines = []

        with self._lock:
            for kind, family in (("counter", self._counters), ("gauge", self._gauges)):
                for metric_name, series in sorted(family.items()):
                    lines.append(f"# TYPE {metric_name} {kind}")
                    lines.extend(self._series(metric_name, key, value) for key, value in sorted(series.items()))

            for metric_name, series in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for key, histogram in sorted(series.items()):
                    cumulative = 0
                    for bound, bucket_count in zip(self.latency_buckets, histogram.bucket_counts):
                        cumulative += bucket_count
                        lines.append(self._series(f"{metric_name}_bucket", sorted(key + (("le", str(bound)),)), cumulative))
                    lines.append(self._series(f"{metric_name}_bucket", sorted(key + (("le", "+Inf"),)), histogram.count))
                    lines.append(self._series(f"{metric_name}_count", key, histogram.count))
                    lines.append(self._series(f"{metric_name}_sum", key, histogram.total))

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
