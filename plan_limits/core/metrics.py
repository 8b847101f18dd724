"""
In-process limit metrics, exported in Prometheus text format.

Counters only: every figure the engine reports is a monotonic count of
decisions, events, retries or handler failures. Labels are fixed per metric
and checked on every increment so a typo cannot silently open a new series.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\"", "\\\"")


class Counter:
    def __init__(self, name: str, description: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.description = description
        self.label_names = tuple(label_names or ())
        self._series: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no label(s) {', '.join(sorted(unknown))}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.name} can only increase")
        key = self._key(labels)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._series.values())

    def samples(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            items = list(self._series.items())
        return [(dict(zip(self.label_names, key)), value) for key, value in items]

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        for labels, value in self.samples():
            rendered = ",".join(f'{name}="{_escape(val)}"' for name, val in labels.items())
            lines.append(f"{self.name}{{{rendered}}} {value}" if rendered else f"{self.name} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        """Register (or fetch) a counter; re-registering with other labels is an error."""
        labels = tuple(label_names or ())
        with self._lock:
            existing = self.counters.get(name)
            if existing is not None:
                if existing.label_names != labels:
                    raise ValueError(f"Counter {name} already registered with labels {existing.label_names}")
                return existing
            self.counters[name] = Counter(name, description, labels)
            return self.counters[name]

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.counters.values()):
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def snapshot(self) -> Dict[str, float]:
        """Totals per counter, for logs and health output."""
        return {name: metric.total() for name, metric in self.counters.items()}

    def reset(self) -> None:
        for metric in self.counters.values():
            metric.reset()


METRICS = MetricsRegistry()

limit_events_total = METRICS.counter(
    "plan_limit_events_total", "Warning, grace start and block events emitted", ["event", "limit_key"]
)
limit_decisions_total = METRICS.counter(
    "plan_limit_decisions_total", "Guard decisions by resulting state", ["state"]
)
storage_retries_total = METRICS.counter(
    "plan_limit_storage_retries_total", "Contended writes retried", ["op"]
)
callback_errors_total = METRICS.counter(
    "plan_limit_callback_errors_total", "Event handlers that raised", ["event"]
)
