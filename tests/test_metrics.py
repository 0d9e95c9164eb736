"""
tests/test_metrics.py — in-memory probe aggregates.

Runs with:  poetry run pytest tests/test_metrics.py -v
"""
from __future__ import annotations

import pytest

from conftest import outcome
from fastapi_pulse.metrics import PulseMetrics
from fastapi_pulse.schema import EndpointStatus

UP, DOWN = EndpointStatus.UP, EndpointStatus.DOWN


@pytest.mark.asyncio
class TestPulseMetrics:
    async def test_aggregates(self):
        m = PulseMetrics()
        for status, latency in [(UP, 10), (UP, 30), (DOWN, 200), (UP, 20)]:
            await m.record("ep-1", outcome(status, latency_ms=latency))

        metric = m.get("ep-1")
        assert metric.checks == 4
        assert metric.failures == 1
        assert metric.avg_latency_ms == 65
        assert metric.max_latency_ms == 200
        assert metric.uptime_pct == 75.0

    async def test_snapshot_sorted_with_totals(self):
        m = PulseMetrics()
        await m.record("b", outcome(DOWN))
        await m.record("a", outcome(UP))

        snap = m.snapshot()

        assert [e.endpoint_id for e in snap.endpoints] == ["a", "b"]
        assert snap.total_checks == 2
        assert snap.total_failures == 1
        assert snap.at_capacity is False

    async def test_cap_drops_new_endpoints(self):
        m = PulseMetrics(max_endpoints=1)
        await m.record("a", outcome(UP))
        await m.record("b", outcome(UP))
        await m.record("a", outcome(UP))

        assert m.endpoint_count == 1
        assert m.get("b") is None
        assert m.get("a").checks == 2
        assert m.at_capacity

    async def test_forget(self):
        m = PulseMetrics()
        await m.record("a", outcome(UP))
        m.forget("a")
        m.forget("never-seen")
        assert m.get("a") is None
        assert m.total_checks == 0

    async def test_p95(self):
        m = PulseMetrics()
        for latency in range(1, 101):
            await m.record("a", outcome(UP, latency_ms=latency))
        assert m.get("a").p95_latency_ms == 95
