from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RunSample:
    ts: float
    outcome: str
    duration_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_run_samples: Deque[RunSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_run(*, outcome: str, duration_ms: float) -> None:
    # Track invoice run outcomes and latency for worker dashboards.
    _run_samples.append(RunSample(ts=time.time(), outcome=outcome, duration_ms=duration_ms))
    increment_counter(f"invoice_runs_total.{outcome}")


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
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
    _gauges[name] = float(value)


def run_outcomes(window_s: int) -> dict[str, int]:
    cutoff = time.time() - window_s
    outcomes: dict[str, int] = defaultdict(int)
    for sample in _run_samples:
        if sample.ts >= cutoff:
            outcomes[sample.outcome] += 1
    return dict(outcomes)


def p95_run_duration(window_s: int) -> float | None:
    cutoff = time.time() - window_s
    durations = sorted(sample.duration_ms for sample in _run_samples if sample.ts >= cutoff)
    if not durations:
        return None
    idx = max(0, math.ceil(0.95 * len(durations)) - 1)
    return durations[idx]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate external call latency for integrations in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for integration, latencies in by_integration.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests assert on counters; start each from a clean slate.
    _run_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
