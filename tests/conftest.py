"""
Shared helpers for the fastapi-pulse test suite.

Runs with:  poetry run pytest -v
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from fastapi_pulse.alerting import NotificationDispatcher
from fastapi_pulse.config import PulseConfig
from fastapi_pulse.notifiers import WebhookNotifier
from fastapi_pulse.schema import EndpointCreate, EndpointStatus, ProbeOutcome
from fastapi_pulse.storage.memory_storage import MemoryStorage

# ─── helpers ─────────────────────────────────────────────────────────────────


def make_config(**overrides) -> PulseConfig:
    base = {"storage_backend": "memory", "configure_logging": False}
    base.update(overrides)
    return PulseConfig(**base)


def outcome(status: EndpointStatus, *, code: Optional[int] = None, latency_ms: int = 5) -> ProbeOutcome:
    if code is None and status is EndpointStatus.UP:
        code = 200
    return ProbeOutcome(
        status=status,
        status_code=code,
        latency_ms=latency_ms,
        observed_at=datetime.now(tz=timezone.utc),
    )


async def settle(rounds: int = 25) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ScriptedProber:
    """
    Stand-in for ``Prober`` that returns scripted statuses.

    When ``gate`` is given every probe blocks on it, which keeps a probe
    "in flight" for as long as the test needs.
    """

    def __init__(self, statuses=None, *, gate: Optional[asyncio.Event] = None, delay: float = 0.0) -> None:
        self.statuses = list(statuses or [])
        self.gate = gate
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def probe(self, endpoint) -> ProbeOutcome:
        self.calls.append(endpoint.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            status = self.statuses.pop(0) if self.statuses else EndpointStatus.UP
            return outcome(status, code=200 if status is EndpointStatus.UP else 503)
        finally:
            self.active -= 1


class ManualSleep:
    """Injectable sleep: every wait blocks until the test calls ``release()``."""

    def __init__(self) -> None:
        self.waits: list[float] = []
        self._pending: list[asyncio.Future] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)
        fut = asyncio.get_running_loop().create_future()
        self._pending.append(fut)
        await fut

    @property
    def sleeping(self) -> int:
        return sum(1 for f in self._pending if not f.done())

    def release(self) -> None:
        pending, self._pending = self._pending, []
        for fut in pending:
            if not fut.done():
                fut.set_result(None)


class WebhookRecorder:
    """``httpx.MockTransport`` handler that records every webhook POST."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    @property
    def payloads(self) -> list[dict]:
        import json

        return [json.loads(r.content) for r in self.requests]


# ─── fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage(make_config())


@pytest.fixture
def webhooks() -> WebhookRecorder:
    return WebhookRecorder()


@pytest_asyncio.fixture
async def webhook_client(webhooks):
    client = httpx.AsyncClient(transport=httpx.MockTransport(webhooks))
    yield client
    await client.aclose()


@pytest.fixture
def dispatcher(webhook_client, storage) -> NotificationDispatcher:
    return NotificationDispatcher(WebhookNotifier(webhook_client, storage))


async def add_endpoint(storage, **fields):
    data = {"url": "https://example.test/health", "interval_seconds": 10}
    data.update(fields)
    return await storage.create_endpoint(EndpointCreate(**data))
