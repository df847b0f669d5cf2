from __future__ import annotations

import math
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Iterable


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    route_class: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


# In-process only; every API worker keeps its own rolling window.
_requests: Deque[RequestSample] = deque(maxlen=20000)
_external_calls: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_request(*, path: str, route_class: str, status_code: int, latency_ms: float) -> None:
    _requests.append(RequestSample(time.time(), path, route_class, status_code, latency_ms))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_calls.append(ExternalCallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _p95(values: Iterable[float]) -> float | None:
    ordered = sorted(values)
    if not ordered:
        return None
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def _recent_requests(window_s: int, path_prefix: str | None = None) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [
        sample
        for sample in _requests
        if sample.ts >= cutoff and (path_prefix is None or sample.path.startswith(path_prefix))
    ]


def availability(window_s: int) -> float | None:
    # Share of requests in the window that did not end in a 5xx.
    samples = _recent_requests(window_s)
    if not samples:
        return None
    healthy = sum(1 for sample in samples if sample.status_code < 500)
    return healthy * 100.0 / len(samples)


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    return _p95(sample.latency_ms for sample in _recent_requests(window_s, path_prefix))


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_calls:
        if sample.ts >= cutoff:
            by_integration[sample.integration].append(sample)
    stats: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in by_integration.items():
        latencies = [sample.latency_ms for sample in samples]
        stats[integration] = {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": _p95(latencies),
            "max": max(latencies),
        }
    return stats


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    for store in (_requests, _external_calls, _counters, _gauges):
        store.clear()
