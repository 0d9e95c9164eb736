"""
In-memory backend for fastapi-pulse.

Everything lives in process dicts guarded by one ``asyncio.Lock``; nothing
survives a restart. Meant for tests and single-process demos.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from fastapi_pulse.schema import (
    Endpoint,
    EndpointCreate,
    EndpointStatus,
    EndpointUpdate,
    ProbeOutcome,
    WebhookDelivery,
)

if TYPE_CHECKING:
    from fastapi_pulse.config import PulseConfig


class MemoryStorage:
    """``PulseStorageProtocol`` implementation backed by plain dicts."""

    def __init__(self, config: Optional["PulseConfig"] = None) -> None:
        self._config = config
        self._endpoints: dict[str, Endpoint] = {}
        self._deliveries: list[WebhookDelivery] = []
        self._lock = asyncio.Lock()

    # ── Endpoint registry ─────────────────────────────────────────────────

    async def list_endpoints(
        self,
        *,
        enabled: Optional[bool] = None,
        status: Optional[EndpointStatus] = None,
    ) -> list[Endpoint]:
        async with self._lock:
            eps = list(self._endpoints.values())
        if enabled is not None:
            eps = [e for e in eps if e.enabled == enabled]
        if status is not None:
            eps = [e for e in eps if e.last_status == status]
        return [e.model_copy() for e in eps]

    async def list_enabled_endpoints(self) -> list[Endpoint]:
        return await self.list_endpoints(enabled=True)

    async def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        async with self._lock:
            ep = self._endpoints.get(endpoint_id)
            return ep.model_copy() if ep else None

    async def create_endpoint(self, data: EndpointCreate) -> Endpoint:
        now = datetime.now(tz=timezone.utc)
        ep = Endpoint(
            id=str(uuid.uuid4()),
            **data.model_dump(),
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._endpoints[ep.id] = ep
        return ep.model_copy()

    async def update_endpoint(
        self, endpoint_id: str, data: EndpointUpdate
    ) -> Optional[Endpoint]:
        async with self._lock:
            ep = self._endpoints.get(endpoint_id)
            if ep is None:
                return None
            now = datetime.now(tz=timezone.utc)
            if ep.updated_at is not None and now <= ep.updated_at:
                # Two writes inside one clock tick still get distinct stamps.
                now = ep.updated_at + timedelta(microseconds=1)
            updated = ep.model_copy(update={**data.changes(), "updated_at": now})
            self._endpoints[endpoint_id] = updated
            return updated.model_copy()

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        async with self._lock:
            if self._endpoints.pop(endpoint_id, None) is None:
                return False
            self._deliveries = [d for d in self._deliveries if d.endpoint_id != endpoint_id]
            return True

    # ── Result sink ───────────────────────────────────────────────────────

    async def update_endpoint_status(
        self, endpoint_id: str, outcome: ProbeOutcome
    ) -> bool:
        async with self._lock:
            ep = self._endpoints.get(endpoint_id)
            if ep is None:
                return False
            self._endpoints[endpoint_id] = ep.model_copy(
                update={
                    "last_status": outcome.status,
                    "last_status_code": outcome.status_code,
                    "last_latency_ms": outcome.latency_ms,
                    "last_checked_at": outcome.observed_at,
                    "last_error": outcome.error,
                }
            )
            return True

    # ── Webhook delivery log ──────────────────────────────────────────────

    async def record_delivery(self, delivery: WebhookDelivery) -> None:
        async with self._lock:
            # Mirrors the SQL foreign key: deliveries of deleted endpoints are dropped.
            if delivery.endpoint_id in self._endpoints:
                self._deliveries.append(delivery)

    async def list_deliveries(
        self, endpoint_id: str, *, limit: int = 50
    ) -> list[WebhookDelivery]:
        async with self._lock:
            rows = [d for d in self._deliveries if d.endpoint_id == endpoint_id]
        rows.sort(key=lambda d: d.sent_at, reverse=True)
        return rows[:limit]

    # ── Maintenance ───────────────────────────────────────────────────────

    async def flush(self) -> None:
        if self._config is None:
            return
        cutoff = datetime.now(tz=timezone.utc) - timedelta(
            hours=self._config.delivery_retention_hours
        )
        async with self._lock:
            kept = [d for d in self._deliveries if d.sent_at >= cutoff]
            kept.sort(key=lambda d: d.sent_at)
            self._deliveries = kept[-self._config.delivery_max_entries:] if kept else []

    async def health(self) -> tuple[bool, str]:
        return True, ""

    async def close(self) -> None:
        return None
