from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for SLO calculations.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture gateway call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _window_requests(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def _p95(latencies: list[float]) -> float:
    ordered = sorted(latencies)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def availability(window_s: int) -> float | None:
    # Share of non-5xx responses over the window, as a percentage.
    samples = _window_requests(window_s)
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def request_latency_p95(window_s: int, *, path_prefix: str | None = None) -> float | None:
    samples = _window_requests(window_s)
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    return _p95([sample.latency_ms for sample in samples])


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int]]:
    """Per-integration call count, error rate and latency over the window."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        failures = sum(1 for sample in samples if not sample.success)
        summary[integration] = {
            "calls": len(samples),
            "error_rate": failures / len(samples),
            "p95_ms": _p95(latencies),
            "max_ms": max(latencies),
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear in-process samples so tests observe only their own traffic.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
