"""
fastapi-pulse — example app (backend: SQLite, or PostgreSQL via env).

Run::

    poetry run uvicorn examples.example:app --reload --port 8001

Routes::

    GET    /                                   -> app's own health check
    GET    /flaky                              -> 503 every other call
    GET    /pulse/health                       -> pulse subsystem health
    GET    /pulse/api/endpoints                -> monitored endpoints
    POST   /pulse/api/endpoints/{id}/check     -> probe now
    GET    /pulse/api/endpoints/{id}/deliveries-> webhook log
    POST   /hooks                              -> receives status-change webhooks

On startup the app registers its own ``/`` and ``/flaky`` routes as
monitored endpoints, with ``/hooks`` as their webhook target. Watch the
log: ``/flaky`` flips between up and down and each flip posts a webhook.
"""
import os
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response

from fastapi_pulse import EndpointCreate, PulseConfig, setup

logger = structlog.get_logger("example")

BASE = os.getenv("EXAMPLE_BASE_URL", "http://127.0.0.1:8001")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Registers this app's own routes as monitored endpoints."""
    storage = config.storage_instance
    known = {e.url for e in await storage.list_endpoints()}
    for path in ("/", "/flaky"):
        url = f"{BASE}{path}"
        if url in known:
            continue
        await storage.create_endpoint(EndpointCreate(
            url=url,
            interval_seconds=5,
            webhook_url=f"{BASE}/hooks",
        ))
    config.worker_instance.notify_change()
    yield


app = FastAPI(title="fastapi-pulse example", lifespan=lifespan)

config = setup(app, config=PulseConfig(
    storage_backend=os.getenv("PULSE_STORAGE_BACKEND", "sqlite"),
    sqlite_path="example_pulse.db",
    reconcile_interval_seconds=10,
    log_json=False,
))

_flaky_calls = 0


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/flaky")
async def flaky(response: Response):
    global _flaky_calls
    _flaky_calls += 1
    if _flaky_calls % 2 == 0:
        response.status_code = 503
        return {"status": "unavailable"}
    return {"status": "ok"}


@app.post("/hooks")
async def receive_hook(request: Request):
    body = await request.json()
    logger.info(
        "webhook_received",
        endpoint=body["endpoint"]["url"],
        previous=body["previous_status"],
        current=body["current_status"],
    )
    return {"received": True}


if __name__ == "__main__":
    uvicorn.run("examples.example:app", host="127.0.0.1", port=8001, reload=True)
