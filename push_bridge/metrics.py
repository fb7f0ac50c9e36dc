"""
Metrics collection and Prometheus-compatible exposition.

Counters and gauges for notification delivery and relay connectivity.
Gauges may carry labels (e.g. one `relay_connected` series per relay).
"""

from __future__ import annotations

import time
from collections import defaultdict

PREFIX = "push_bridge_"

_Key = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, labels: dict[str, str]) -> _Key:
    return f"{PREFIX}{name}", tuple(sorted(labels.items()))


def _render(key: _Key) -> str:
    name, labels = key
    if not labels:
        return name
    rendered = ",".join(f'{k}="{_escape(v)}"' for k, v in labels)
    return f"{name}{{{rendered}}}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class MetricsCollector:
    """In-process counters and gauges with Prometheus text format export."""

    def __init__(self) -> None:
        self._counters: dict[_Key, int] = defaultdict(int)
        self._gauges: dict[_Key, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        self._counters[_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._gauges[_key(name, labels)] = value

    def clear_gauge(self, name: str) -> None:
        """Drop every labelled series of a gauge (e.g. before re-publishing relays)."""
        full = f"{PREFIX}{name}"
        for key in [k for k in self._gauges if k[0] == full]:
            del self._gauges[key]

    def get(self, name: str, **labels: str) -> int | float:
        key = _key(name, labels)
        if key in self._gauges:
            return self._gauges[key]
        return self._counters.get(key, 0)

    def to_prometheus(self) -> str:
        lines = []
        for series, kind in ((self._counters, "counter"), (self._gauges, "gauge")):
            typed: set[str] = set()
            for key, value in sorted(series.items()):
                if key[0] not in typed:
                    typed.add(key[0])
                    lines.append(f"# TYPE {key[0]} {kind}")
                lines.append(f"{_render(key)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"
