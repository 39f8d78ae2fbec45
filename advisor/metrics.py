from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any


_DEFAULT_MS_BUCKETS = (25, 50, 100, 250, 500, 1000, 2000, 4000, 8000)


def _prom_name(name: str) -> str:
    # Prometheus does not allow '.' in metric names.
    return (name or "").replace(".", "_")


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        with self._lock:
            self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        with self._lock:
            self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "histograms": {k: list(v) for k, v in self.histograms.items()},
                "gauges": dict(self.gauges),
            }

    def render_prometheus(self, *, ms_buckets: tuple[int, ...] = _DEFAULT_MS_BUCKETS) -> str:
        snap = self.snapshot()
        lines: list[str] = []
        for name in sorted(snap["counters"]):
            key = _prom_name(name)
            lines.append(f"# TYPE {key} counter")
            lines.append(f"{key} {int(snap['counters'][name])}")
        for name in sorted(snap["histograms"]):
            key = _prom_name(name)
            values = snap["histograms"][name]
            lines.append(f"# TYPE {key} histogram")
            for b in ms_buckets:
                lines.append(f'{key}_bucket{{le="{int(b)}"}} {sum(1 for v in values if v <= b)}')
            lines.append(f'{key}_bucket{{le="+Inf"}} {len(values)}')
            lines.append(f"{key}_sum {sum(values)}")
            lines.append(f"{key}_count {len(values)}")
        for name in sorted(snap["gauges"]):
            key = _prom_name(name)
            lines.append(f"# TYPE {key} gauge")
            lines.append(f"{key} {int(snap['gauges'][name])}")
        return "\n".join(lines) + "\n"


class CompositeMetrics:
    """
    Write-only metrics fanout.

    Lets a test-owned Metrics and the process-level GLOBAL_METRICS observe the same events.
    """

    def __init__(self, *sinks: Any) -> None:
        self._sinks = [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)

    def set(self, name: str, value: int) -> None:
        for s in self._sinks:
            if hasattr(s, "set"):
                s.set(name, value)


KEYS = {
    # Turns
    "turns_total": "turn.total",
    "turn_empty_total": "turn.empty_total",
    "turn_interrupt_stop_total": "turn.interrupt_stop_total",
    "turn_failures_total": "turn.failures_total",
    "turn_degraded_total": "turn.degraded_total",
    "turn_latency_ms": "turn.latency_ms",
    # Conversation bookkeeping
    "interruptions_total": "conversation.interruptions_total",
    "objections_total": "conversation.objections_total",
    "booking_attempts_total": "conversation.booking_attempts_total",
    "stale_swept_total": "conversation.stale_swept_total",
    # Cache layer
    "cache_hit_total": "cache.hit_total",
    "cache_miss_total": "cache.miss_total",
    "cache_remote_failure_total": "cache.remote_failure_total",
    "cache_remote_healthy": "cache.remote_healthy",
    # Knowledge index
    "kb_hot_set_hit_total": "kb.hot_set_hit_total",
    "kb_full_scan_total": "kb.full_scan_total",
    "kb_chunks_current": "kb.chunks_current",
    "kb_rebuild_total": "kb.rebuild_total",
    # Generation / synthesis
    "response_cache_hit_total": "llm.response_cache_hit_total",
    "generation_latency_ms": "llm.generation_latency_ms",
    "generation_failures_total": "llm.generation_failures_total",
    "synthesis_latency_ms": "tts.synthesis_latency_ms",
    "synthesis_failures_total": "tts.synthesis_failures_total",
    # Sessions
    "session_corrupt_total": "session.corrupt_total",
    "session_swept_total": "session.swept_total",
}


GLOBAL_METRICS = Metrics()
