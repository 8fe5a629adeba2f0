from __future__ import annotations

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


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the ops endpoint.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def record_admission_denied(kind: str) -> None:
    # One counter per rejection kind, e.g. admission_denied_total.rate_limited.
    increment_counter(f"admission_denied_total.{kind}")


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def request_summary(window_s: int) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return {"requests": 0, "error_rate": None, "p95_ms": None}
    latencies = sorted(sample.latency_ms for sample in samples)
    p95_index = max(0, int(round(0.95 * (len(latencies) - 1))))
    errors = sum(1 for sample in samples if sample.status_code >= 500)
    return {
        "requests": len(samples),
        "error_rate": errors / len(samples),
        "p95_ms": latencies[p95_index],
    }


def reset_telemetry() -> None:
    _request_samples.clear()
    _counters.clear()
