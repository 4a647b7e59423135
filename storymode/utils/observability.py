from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Deque, Dict, Iterator, List

MetricsSnapshot = Dict[str, Dict[str, float]]


class TurnMetrics:
    """Process-local counters and phase latencies for conversation turns."""

    def __init__(self, percentile_window: int = 200) -> None:
        self._lock = Lock()
        self._counts: Dict[str, int] = defaultdict(int)
        self._latency_sum: Dict[str, float] = defaultdict(float)
        self._latency_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=percentile_window))
        self._phase_latency_sum: Dict[str, float] = defaultdict(float)
        self._phase_latency_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=percentile_window))
        self._stage_counts: Dict[str, int] = defaultdict(int)
        self._counters: Dict[str, float] = defaultdict(float)

    def record(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self._counts[endpoint] += 1
            self._latency_sum[endpoint] += duration_ms
            self._latency_samples[endpoint].append(duration_ms)

    def record_phase(self, phase: str, duration_ms: float) -> None:
        with self._lock:
            self._phase_latency_sum[phase] += duration_ms
            self._phase_latency_samples[phase].append(duration_ms)

    def record_stage(self, stage: str) -> None:
        with self._lock:
            self._stage_counts[stage] += 1

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            data: MetricsSnapshot = {}
            for endpoint, count in self._counts.items():
                percentiles = _compute_percentiles(list(self._latency_samples[endpoint]))
                data[endpoint] = {
                    "count": float(count),
                    "avg_latency_ms": (self._latency_sum[endpoint] / count) if count else 0.0,
                    "p50_latency_ms": percentiles.get(50, 0.0),
                    "p95_latency_ms": percentiles.get(95, 0.0),
                }
            phase_block: Dict[str, float] = {}
            for phase, samples in self._phase_latency_samples.items():
                phase_samples = list(samples)
                if not phase_samples:
                    continue
                percentiles = _compute_percentiles(phase_samples)
                phase_block[f"{phase}::avg_ms"] = self._phase_latency_sum[phase] / len(phase_samples)
                phase_block[f"{phase}::p95_ms"] = percentiles.get(95, 0.0)
            if phase_block:
                data["phases"] = phase_block
            if self._stage_counts:
                data["stages"] = {stage: float(count) for stage, count in self._stage_counts.items()}
            if self._counters:
                data["counters"] = dict(self._counters)
            return data

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._latency_sum.clear()
            self._latency_samples.clear()
            self._phase_latency_sum.clear()
            self._phase_latency_samples.clear()
            self._stage_counts.clear()
            self._counters.clear()


@contextmanager
def time_phase(metrics: TurnMetrics, phase: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_phase(phase, (time.perf_counter() - start) * 1000)


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        index = min(max(index, 0), len(ordered) - 1)
        results[percentile] = ordered[index]
    return results


_METRICS = TurnMetrics()


def get_metrics() -> TurnMetrics:
    return _METRICS
