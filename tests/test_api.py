"""
tests/test_api.py — the HTTP API wired by setup().

Runs with:  poetry run pytest tests/test_api.py -v

Uses httpx.AsyncClient with ASGI transport (no real server needed). The
probe/webhook client is an httpx.MockTransport, so no network either.
"""
from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Header, HTTPException
from httpx import ASGITransport, AsyncClient

from conftest import make_config
from fastapi_pulse import setup


async def _targets(request: httpx.Request) -> httpx.Response:
    if request.url.host == "down.test":
        return httpx.Response(503)
    return httpx.Response(200)


@pytest_asyncio.fixture
async def app_and_config():
    app = FastAPI()
    probe_client = httpx.AsyncClient(transport=httpx.MockTransport(_targets))
    config = setup(app, config=make_config(), http_client=probe_client)
    yield app, config
    await config.scheduler_instance.shutdown()
    await probe_client.aclose()


@pytest_asyncio.fixture
async def client(app_and_config):
    app, _ = app_and_config
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _create(client, **fields) -> dict:
    body = {"url": "https://up.test/health", "interval_seconds": 30}
    body.update(fields)
    resp = await client.post("/pulse/api/endpoints", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
class TestEndpointsApi:
    async def test_create_and_get(self, client):
        created = await _create(client, method="head", webhook_url="https://hooks.test/x")

        assert created["method"] == "HEAD"
        assert created["last_status"] == "unknown"

        resp = await client.get(f"/pulse/api/endpoints/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["webhook_url"] == "https://hooks.test/x"

    async def test_validation(self, client):
        resp = await client.post(
            "/pulse/api/endpoints", json={"url": "https://up.test", "interval_seconds": 3}
        )
        assert resp.status_code == 422

        resp = await client.post("/pulse/api/endpoints", json={"url": "ftp://up.test"})
        assert resp.status_code == 422

    async def test_list_filters(self, client):
        a = await _create(client)
        await _create(client, enabled=False)

        resp = await client.get("/pulse/api/endpoints", params={"enabled": "true"})
        assert [e["id"] for e in resp.json()] == [a["id"]]

    async def test_unknown_endpoint_is_404(self, client):
        resp = await client.get("/pulse/api/endpoints/nope")
        assert resp.status_code == 404
        assert resp.json()["endpoint_id"] == "nope"

        assert (await client.delete("/pulse/api/endpoints/nope")).status_code == 404
        assert (await client.post("/pulse/api/endpoints/nope/check")).status_code == 404

    async def test_patch_and_toggle(self, client):
        ep = await _create(client)

        resp = await client.patch(f"/pulse/api/endpoints/{ep['id']}", json={"interval_seconds": 90})
        assert resp.json()["interval_seconds"] == 90

        resp = await client.post(f"/pulse/api/endpoints/{ep['id']}/toggle")
        assert resp.json()["enabled"] is False
        resp = await client.post(f"/pulse/api/endpoints/{ep['id']}/toggle")
        assert resp.json()["enabled"] is True

    async def test_delete(self, client):
        ep = await _create(client)
        resp = await client.delete(f"/pulse/api/endpoints/{ep['id']}")
        assert resp.status_code == 204
        assert (await client.get(f"/pulse/api/endpoints/{ep['id']}")).status_code == 404

    async def test_mutations_wake_worker(self, client, app_and_config):
        _, config = app_and_config
        worker = config.worker_instance
        worker._wakeup.clear()

        await _create(client)

        assert worker._wakeup.is_set()


@pytest.mark.asyncio
class TestCheckNow:
    async def test_check_returns_outcome_and_persists(self, client):
        ep = await _create(client, url="https://down.test/health")

        resp = await client.post(f"/pulse/api/endpoints/{ep['id']}/check")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "down"
        assert body["status_code"] == 503

        stored = (await client.get(f"/pulse/api/endpoints/{ep['id']}")).json()
        assert stored["last_status"] == "down"
        assert stored["last_status_code"] == 503

    async def test_disabled_endpoint_is_409(self, client):
        ep = await _create(client, enabled=False)
        resp = await client.post(f"/pulse/api/endpoints/{ep['id']}/check")
        assert resp.status_code == 409

    async def test_scheduler_state_and_metrics(self, client):
        ep = await _create(client)
        await client.post(f"/pulse/api/endpoints/{ep['id']}/check")

        state = (await client.get("/pulse/api/scheduler")).json()
        assert state["scheduled"] == [ep["id"]]
        assert state["running"] is False  # lifespan not started under ASGITransport

        metrics = (await client.get("/pulse/api/metrics")).json()
        assert metrics["total_checks"] >= 1
        assert metrics["endpoints"][0]["endpoint_id"] == ep["id"]

    async def test_deliveries_listing(self, client):
        ep = await _create(client)
        resp = await client.get(f"/pulse/api/endpoints/{ep['id']}/deliveries")
        assert resp.status_code == 200
        assert resp.json() == []


@pytest.mark.asyncio
class TestHealthAndMiddleware:
    async def test_health_degraded_without_worker(self, client):
        resp = await client.get("/pulse/health")
        body = resp.json()
        assert resp.status_code == 200
        assert body["status"] == "degraded"
        assert body["storage"] == "ok"
        assert body["storage_backend"] == "memory"

    async def test_request_id_header(self, client):
        resp = await client.get("/pulse/health")
        assert resp.headers["X-Request-ID"]

        resp = await client.get("/pulse/health", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"


@pytest.mark.asyncio
class TestAuthDependency:
    async def test_api_requires_token_but_health_is_public(self):
        async def require_token(x_token: str = Header(default="")):
            if x_token != "secret":
                raise HTTPException(status_code=401, detail="bad token")

        app = FastAPI()
        probe_client = httpx.AsyncClient(transport=httpx.MockTransport(_targets))
        config = setup(
            app,
            config=make_config(api_auth_dependency=require_token),
            http_client=probe_client,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            assert (await c.get("/pulse/api/endpoints")).status_code == 401
            ok = await c.get("/pulse/api/endpoints", headers={"X-Token": "secret"})
            assert ok.status_code == 200
            assert (await c.get("/pulse/health")).status_code == 200

        await config.scheduler_instance.shutdown()
        await probe_client.aclose()


@pytest.mark.asyncio
class TestLifespan:
    async def test_worker_runs_inside_lifespan(self):
        app = FastAPI()
        probe_client = httpx.AsyncClient(transport=httpx.MockTransport(_targets))
        config = setup(app, config=make_config(), http_client=probe_client)

        async with app.router.lifespan_context(app):
            assert config.worker_instance.is_running

        assert not config.worker_instance.is_running
        assert not probe_client.is_closed  # caller-owned client stays open
        await probe_client.aclose()
