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
_external_samples: Deque[ExternalCallSample] = deque(maxlen=5000)
_admission_samples: Deque[float] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture billing collaborator latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_admission_latency(latency_ms: float) -> None:
    # Admission sits on the inventory write path; its tail latency is the number to watch.
    _admission_samples.append(latency_ms)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _percentile(values: list[float], ratio: float) -> float:
    idx = max(0, math.ceil(ratio * len(values)) - 1)
    return values[idx]


def request_latency_summary(window_s: int) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    latencies = sorted(sample.latency_ms for sample in _request_samples if sample.ts >= cutoff)
    if not latencies:
        return {"count": 0, "p50": None, "p95": None, "max": None}
    return {
        "count": len(latencies),
        "p50": _percentile(latencies, 0.5),
        "p95": _percentile(latencies, 0.95),
        "max": latencies[-1],
    }


def admission_latency_summary() -> dict[str, float | None]:
    if not _admission_samples:
        return {"p95": None, "p99": None, "max": None}
    latencies = sorted(_admission_samples)
    return {
        "p95": _percentile(latencies, 0.95),
        "p99": _percentile(latencies, 0.99),
        "max": latencies[-1],
    }


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        result[integration] = {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": _percentile(latencies, 0.95),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests assert on counters; start each one from zero.
    _request_samples.clear()
    _external_samples.clear()
    _admission_samples.clear()
    _counters.clear()
    _gauges.clear()
