"""
In-memory probe metrics aggregator for fastapi-pulse.
======================================================

Updated by the scheduler after every completed probe.
Data lives in process memory and resets on restart; the persisted
``last_*`` fields on each endpoint are the durable record.

- Non-blocking: the Lock is in-memory and never IO-bound.
- Per endpoint: checks, failures, avg / p95 / max latency, uptime.
- Entries are dropped when an endpoint is unscheduled.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field

from fastapi_pulse.schema import (
    EndpointStatus,
    PulseEndpointMetric,
    PulseMetricsSnapshot,
    ProbeOutcome,
)


@dataclass
class _EndpointStats:
    checks: int = 0
    failures: int = 0
    total_ms: int = 0
    max_ms: int = 0
    # Bounded ring buffer: the last 1 000 probes are enough for a stable P95.
    _samples: deque = field(default_factory=lambda: deque(maxlen=1000))

    def record(self, outcome: ProbeOutcome) -> None:
        self.checks += 1
        self.total_ms += outcome.latency_ms
        if outcome.latency_ms > self.max_ms:
            self.max_ms = outcome.latency_ms
        if outcome.status is not EndpointStatus.UP:
            self.failures += 1
        self._samples.append(outcome.latency_ms)

    @property
    def avg_ms(self) -> int:
        return self.total_ms // self.checks if self.checks else 0

    @property
    def p95_ms(self) -> int:
        """95th-percentile latency over the last 1 000 samples."""
        if not self._samples:
            return 0
        sorted_s = sorted(self._samples)
        idx = max(0, int(len(sorted_s) * 0.95) - 1)
        return sorted_s[idx]

    @property
    def uptime_pct(self) -> float:
        if not self.checks:
            return 0.0
        return round((self.checks - self.failures) / self.checks * 100, 1)


class PulseMetrics:
    """
    In-memory per-endpoint probe aggregates.

    ``max_endpoints`` caps the number of distinct endpoints tracked; once the
    cap is reached, outcomes for untracked endpoints are dropped.

    Usage::

        metrics = PulseMetrics()
        await metrics.record("ep-1", outcome)
        snap = metrics.snapshot()
    """

    def __init__(self, max_endpoints: int = 1_000) -> None:
        self._data: dict[str, _EndpointStats] = {}
        self._lock = asyncio.Lock()
        self._max_endpoints = max_endpoints

    async def record(self, endpoint_id: str, outcome: ProbeOutcome) -> None:
        async with self._lock:
            stats = self._data.get(endpoint_id)
            if stats is None:
                if len(self._data) >= self._max_endpoints:
                    return  # cap reached
                stats = self._data[endpoint_id] = _EndpointStats()
            stats.record(outcome)

    def forget(self, endpoint_id: str) -> None:
        """Drop the aggregates of an endpoint that is no longer scheduled."""
        self._data.pop(endpoint_id, None)

    def get(self, endpoint_id: str) -> PulseEndpointMetric | None:
        stats = self._data.get(endpoint_id)
        return self._to_metric(endpoint_id, stats) if stats is not None else None

    @staticmethod
    def _to_metric(endpoint_id: str, s: _EndpointStats) -> PulseEndpointMetric:
        return PulseEndpointMetric(
            endpoint_id=endpoint_id,
            checks=s.checks,
            failures=s.failures,
            avg_latency_ms=s.avg_ms,
            p95_latency_ms=s.p95_ms,
            max_latency_ms=s.max_ms,
            uptime_pct=s.uptime_pct,
        )

    def snapshot(self) -> PulseMetricsSnapshot:
        """Per-endpoint metrics sorted by endpoint id."""
        return PulseMetricsSnapshot(
            endpoints=[self._to_metric(eid, s) for eid, s in sorted(self._data.items())],
            total_checks=self.total_checks,
            total_failures=self.total_failures,
            at_capacity=self.at_capacity,
            max_endpoints=self._max_endpoints,
        )

    @property
    def total_checks(self) -> int:
        return sum(s.checks for s in self._data.values())

    @property
    def total_failures(self) -> int:
        return sum(s.failures for s in self._data.values())

    @property
    def endpoint_count(self) -> int:
        return len(self._data)

    @property
    def at_capacity(self) -> bool:
        return len(self._data) >= self._max_endpoints

    def reset(self) -> None:
        """Clear all accumulated metrics. Useful for tests."""
        self._data.clear()
