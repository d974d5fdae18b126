from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Iterable


@dataclass(frozen=True)
class RequestSample:
    ts: float
    route_class: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


# Process-local only; each API or worker process reports its own view.
_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)

_ROUTE_CLASSES = (
    ("/v1/auth/register-organization", "registration"),
    ("/v1/auth/registration-status", "registration"),
    ("/v1/webhooks", "webhooks"),
    ("/v1/auth", "token_bridge"),
    ("/v1/ops", "ops"),
    ("/v1/admin", "admin"),
)


def route_class_for_path(path: str) -> str:
    # Coarse route buckets keep latency summaries readable on the ops dashboard.
    for prefix, route_class in _ROUTE_CLASSES:
        if path.startswith(prefix):
            return route_class
    return "other"


# Called by the request middleware once per response.
def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            route_class=route_class_for_path(path),
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


# Called once per identity provider call, after its retries settle.
def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_samples.append(
        ExternalCallSample(ts=time.time(), integration=integration, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    # Copy; callers may hold it across later increments.
    return dict(_counters)


def _nearest_rank(ordered: list[float], fraction: float) -> float:
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def _summary(latencies: Iterable[float]) -> dict[str, float | int]:
    ordered = sorted(latencies)
    return {
        "count": len(ordered),
        "p50": _nearest_rank(ordered, 0.5),
        "p95": _nearest_rank(ordered, 0.95),
        "max": ordered[-1],
    }


def availability(window_s: int) -> float | None:
    """Percentage of non-5xx responses in the window, or None without traffic."""
    cutoff = time.time() - window_s
    statuses = [sample.status_code for sample in _request_samples if sample.ts >= cutoff]
    if not statuses:
        return None
    ok = sum(1 for status_code in statuses if status_code < 500)
    return ok / len(statuses) * 100.0


def request_latency_by_class(window_s: int) -> dict[str, dict[str, float | int]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[RequestSample]] = defaultdict(list)
    for sample in _request_samples:
        if sample.ts >= cutoff:
            grouped[sample.route_class].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for route_class, samples in grouped.items():
        stats = _summary(sample.latency_ms for sample in samples)
        stats["errors_5xx"] = sum(1 for sample in samples if sample.status_code >= 500)
        result[route_class] = stats
    return result


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int]]:
    # Identity provider calls (session lookup, JWKS) grouped by integration label.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        stats = _summary(sample.latency_ms for sample in samples)
        stats["failures"] = sum(1 for sample in samples if not sample.success)
        result[integration] = stats
    return result


def reset_telemetry() -> None:
    # Test isolation only.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
