"""
FastAPI router for fastapi-pulse.

Registers routes under config.api_path:
  GET    /pulse/health                             -> PulseHealthReport (public)
  GET    /pulse/api/endpoints                      -> list[Endpoint]
  POST   /pulse/api/endpoints                      -> Endpoint (201)
  GET    /pulse/api/endpoints/{id}                 -> Endpoint
  PATCH  /pulse/api/endpoints/{id}                 -> Endpoint
  DELETE /pulse/api/endpoints/{id}                 -> 204
  POST   /pulse/api/endpoints/{id}/toggle          -> Endpoint
  POST   /pulse/api/endpoints/{id}/check           -> ProbeOutcome
  GET    /pulse/api/endpoints/{id}/deliveries      -> list[WebhookDelivery]
  GET    /pulse/api/metrics                        -> PulseMetricsSnapshot
  GET    /pulse/api/scheduler                      -> PulseSchedulerState

The router speaks only to the storage protocol, the scheduler, the worker
and the metrics aggregator. Every mutation wakes the worker so the schedule
follows the store without waiting for the next poll tick.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from fastapi_pulse.exceptions import EndpointNotFound, EndpointNotScheduled, StorageError
from fastapi_pulse.schema import (
    Endpoint,
    EndpointCreate,
    EndpointStatus,
    EndpointUpdate,
    ProbeOutcome,
    PulseHealthReport,
    PulseMetricsSnapshot,
    PulseSchedulerState,
    WebhookDelivery,
)


def make_router(config) -> APIRouter:
    """Returns a configured APIRouter. Called once during setup()."""
    router = APIRouter(prefix=config.api_path, tags=["pulse"])

    deps = []
    if config.api_auth_dependency is not None:
        deps.append(Depends(config.api_auth_dependency))

    def _storage():
        storage = config.storage_instance
        if storage is None:
            raise StorageError("Storage not initialised")
        return storage

    def _changed() -> None:
        worker = config.worker_instance
        if worker is not None:
            worker.notify_change()

    async def _get_or_404(endpoint_id: str) -> Endpoint:
        endpoint = await _storage().get_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        return endpoint

    # ── PUBLIC: Health Check (no auth required) ───────────────────────────
    @router.get("/health", response_model=PulseHealthReport)
    async def health_check():
        """
        Returns the operational status of the fastapi-pulse subsystems.

        Public, so it can be polled by external monitoring.

        ``status`` values:
          - ``ok``       — storage reachable and worker running.
          - ``degraded`` — storage is ok but the worker is stopped.
          - ``down``     — storage is unreachable.
        """
        storage = config.storage_instance
        worker = config.worker_instance
        scheduler = config.scheduler_instance

        worker_running = worker.is_running if worker else False
        cycles = worker.reconcile_cycles if worker else 0
        scheduled = len(scheduler.scheduled_ids) if scheduler else 0

        if storage is None:
            storage_ok, storage_error = False, "Storage not initialised"
        else:
            storage_ok, storage_error = await storage.health()

        if not storage_ok:
            overall = "down"
        elif not worker_running:
            overall = "degraded"
        else:
            overall = "ok"

        return PulseHealthReport(
            status=overall,
            storage_backend=config.storage_backend,
            storage="ok" if storage_ok else "error",
            storage_error=storage_error or None,
            worker_running=worker_running,
            reconcile_cycles=cycles,
            scheduled_endpoints=scheduled,
        )

    # ── Endpoints ─────────────────────────────────────────────────────────

    @router.get("/api/endpoints", dependencies=deps)
    async def list_endpoints(
        enabled: Optional[bool] = Query(None),
        status: Optional[EndpointStatus] = Query(None),
    ) -> list[Endpoint]:
        return await _storage().list_endpoints(enabled=enabled, status=status)

    @router.post("/api/endpoints", status_code=201, dependencies=deps)
    async def create_endpoint(data: EndpointCreate) -> Endpoint:
        endpoint = await _storage().create_endpoint(data)
        _changed()
        return endpoint

    @router.get("/api/endpoints/{endpoint_id}", dependencies=deps)
    async def get_endpoint(endpoint_id: str) -> Endpoint:
        return await _get_or_404(endpoint_id)

    @router.patch("/api/endpoints/{endpoint_id}", dependencies=deps)
    async def update_endpoint(endpoint_id: str, data: EndpointUpdate) -> Endpoint:
        endpoint = await _storage().update_endpoint(endpoint_id, data)
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        _changed()
        return endpoint

    @router.delete("/api/endpoints/{endpoint_id}", status_code=204, dependencies=deps)
    async def delete_endpoint(endpoint_id: str) -> Response:
        if not await _storage().delete_endpoint(endpoint_id):
            raise EndpointNotFound(endpoint_id)
        _changed()
        return Response(status_code=204)

    @router.post("/api/endpoints/{endpoint_id}/toggle", dependencies=deps)
    async def toggle_endpoint(endpoint_id: str) -> Endpoint:
        current = await _get_or_404(endpoint_id)
        endpoint = await _storage().update_endpoint(
            endpoint_id, EndpointUpdate(enabled=not current.enabled)
        )
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        _changed()
        return endpoint

    @router.post("/api/endpoints/{endpoint_id}/check", dependencies=deps)
    async def check_endpoint(endpoint_id: str) -> ProbeOutcome:
        """Probe the endpoint now. Joins a probe already running for it."""
        scheduler = config.scheduler_instance
        if scheduler is None:
            raise StorageError("Scheduler not initialised")
        outcome = await scheduler.trigger_immediate_check(endpoint_id)
        if outcome is None:
            # Unscheduled (deleted, disabled or edited) while the probe ran.
            raise EndpointNotScheduled(endpoint_id)
        return outcome

    @router.get("/api/endpoints/{endpoint_id}/deliveries", dependencies=deps)
    async def list_deliveries(
        endpoint_id: str,
        limit: int = Query(50, ge=1, le=500),
    ) -> list[WebhookDelivery]:
        await _get_or_404(endpoint_id)
        return await _storage().list_deliveries(endpoint_id, limit=limit)

    # ── Runtime state ─────────────────────────────────────────────────────

    @router.get("/api/metrics", dependencies=deps)
    async def get_metrics() -> PulseMetricsSnapshot:
        m = config.metrics_instance
        if m is None:
            return PulseMetricsSnapshot(endpoints=[], total_checks=0, total_failures=0)
        return m.snapshot()

    @router.get("/api/scheduler", dependencies=deps)
    async def get_scheduler_state() -> PulseSchedulerState:
        scheduler = config.scheduler_instance
        worker = config.worker_instance
        return PulseSchedulerState(
            running=worker.is_running if worker else False,
            scheduled=scheduler.scheduled_ids if scheduler else [],
            in_flight=scheduler.in_flight_ids if scheduler else [],
            reconcile_cycles=worker.reconcile_cycles if worker else 0,
            pending_notifications=scheduler.pending_notifications if scheduler else 0,
        )

    return router
