"""
tests/test_registry.py — the in-memory mirror and the result sink.

Runs with:  poetry run pytest tests/test_registry.py -v
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import add_endpoint, outcome
from fastapi_pulse.registry import EndpointRegistry
from fastapi_pulse.schema import EndpointStatus, EndpointUpdate

UP, DOWN, UNKNOWN = EndpointStatus.UP, EndpointStatus.DOWN, EndpointStatus.UNKNOWN


@pytest.mark.asyncio
class TestSync:
    async def test_mirrors_enabled_endpoints_only(self, storage):
        on = await add_endpoint(storage)
        await add_endpoint(storage, url="https://example.test/off", enabled=False)
        registry = EndpointRegistry(storage)

        synced = await registry.sync()

        assert [e.id for e in synced] == [on.id]
        assert on.id in registry
        assert len(registry) == 1
        assert registry.previous_status(on.id) is UNKNOWN

    async def test_unknown_id_has_no_previous_status(self, storage):
        registry = EndpointRegistry(storage)
        assert registry.previous_status("missing") is None

    async def test_keeps_fresher_local_result(self, storage):
        ep = await add_endpoint(storage)
        registry = EndpointRegistry(storage)
        await registry.sync()
        await registry.record(ep.id, outcome(DOWN))

        # A listing taken before the write reaches sync() after it.
        stale = ep.model_copy(update={"last_status": UP, "last_checked_at": None})
        storage.list_enabled_endpoints = AsyncMock(return_value=[stale])
        await registry.sync()

        assert registry.previous_status(ep.id) is DOWN

    async def test_takes_newer_store_result(self, storage):
        ep = await add_endpoint(storage)
        registry = EndpointRegistry(storage)
        await registry.sync()
        first = outcome(UP)
        await registry.record(ep.id, first)

        newer = ep.model_copy(
            update={"last_status": DOWN, "last_checked_at": first.observed_at + timedelta(seconds=5)}
        )
        storage.list_enabled_endpoints = AsyncMock(return_value=[newer])
        await registry.sync()

        assert registry.previous_status(ep.id) is DOWN

    async def test_picks_up_config_changes(self, storage):
        ep = await add_endpoint(storage)
        registry = EndpointRegistry(storage)
        await registry.sync()

        await storage.update_endpoint(ep.id, EndpointUpdate(interval_seconds=45))
        await registry.sync()

        assert registry.get(ep.id).interval_seconds == 45


@pytest.mark.asyncio
class TestRecord:
    async def test_writes_store_and_mirror(self, storage):
        ep = await add_endpoint(storage)
        registry = EndpointRegistry(storage)
        await registry.sync()

        assert await registry.record(ep.id, outcome(UP, latency_ms=50)) is True

        assert registry.previous_status(ep.id) is UP
        assert registry.get(ep.id).last_latency_ms == 50
        assert (await storage.get_endpoint(ep.id)).last_status is UP

    async def test_deleted_endpoint_is_dropped(self, storage):
        ep = await add_endpoint(storage)
        registry = EndpointRegistry(storage)
        await registry.sync()
        await storage.delete_endpoint(ep.id)

        assert await registry.record(ep.id, outcome(DOWN)) is False
        assert ep.id not in registry
        assert registry.enabled() == []
