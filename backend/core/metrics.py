"""In-process metric store with Prometheus text exposition.

A ``MetricsRegistry`` holds counters, gauges and histogram samples keyed by
name plus labels. Each runtime gets its own registry, so tests and
multi-tenant hosts never share counts.
"""

import threading
import time
from collections import defaultdict
from typing import Optional

# Samples kept per histogram key
_MAX_SAMPLES = 10_000


def _label_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


class MetricsRegistry:
    """Thread-safe counters, gauges and histograms."""

    def __init__(self, namespace: str = "workflow"):
        self.namespace = namespace
        self._lock = threading.Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = defaultdict(float)
        self._histograms: dict[str, list[float]] = defaultdict(list)
        self._start_time = time.time()

    def inc(self, name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
        key = _label_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def gauge_set(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        key = _label_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def gauge_inc(self, name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
        key = _label_key(name, labels)
        with self._lock:
            self._gauges[key] += value

    def observe(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        key = _label_key(name, labels)
        with self._lock:
            samples = self._histograms[key]
            samples.append(value)
            if len(samples) > _MAX_SAMPLES:
                self._histograms[key] = samples[-_MAX_SAMPLES // 2:]

    # ─── Reads ─────────────────────────────────────────────

    def counter_value(self, name: str, labels: Optional[dict] = None) -> float:
        with self._lock:
            return self._counters.get(_label_key(name, labels), 0.0)

    def gauge_value(self, name: str, labels: Optional[dict] = None) -> float:
        with self._lock:
            return self._gauges.get(_label_key(name, labels), 0.0)

    def samples(self, name: str, labels: Optional[dict] = None) -> list[float]:
        with self._lock:
            return list(self._histograms.get(_label_key(name, labels), []))

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    # ─── Exposition ────────────────────────────────────────

    def generate_metrics(self) -> str:
        """Generate Prometheus exposition format text."""
        uptime_name = f"{self.namespace}_uptime_seconds"
        lines: list[str] = [
            f"# HELP {uptime_name} Time since the registry was created.",
            f"# TYPE {uptime_name} gauge",
            f"{uptime_name} {time.time() - self._start_time:.1f}",
            "",
        ]

        with self._lock:
            lines.extend(self._render(self._counters, "counter"))
            lines.extend(self._render(self._gauges, "gauge"))

            # Histograms are exported as summaries (count and sum only)
            if self._histograms:
                seen: set[str] = set()
                for key, values in sorted(self._histograms.items()):
                    base_name = key.split("{")[0]
                    if base_name not in seen:
                        lines.append(f"# TYPE {base_name} summary")
                        seen.add(base_name)
                    if values:
                        lines.append(f"{_suffixed(key, '_count')} {len(values)}")
                        lines.append(f"{_suffixed(key, '_sum')} {sum(values):.4f}")
                lines.append("")

        return "\n".join(lines) + "\n"

    @staticmethod
    def _render(values: dict[str, float], kind: str) -> list[str]:
        if not values:
            return []
        lines = []
        seen: set[str] = set()
        for key, val in sorted(values.items()):
            base_name = key.split("{")[0]
            if base_name not in seen:
                lines.append(f"# TYPE {base_name} {kind}")
                seen.add(base_name)
            lines.append(f"{key} {val}")
        lines.append("")
        return lines


def _suffixed(key: str, suffix: str) -> str:
    """Insert a suffix between the metric name and its label set."""
    if "{" not in key:
        return key + suffix
    name, labels = key.split("{", 1)
    return f"{name}{suffix}{{{labels}"
