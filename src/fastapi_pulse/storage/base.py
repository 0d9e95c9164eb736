"""
Storage abstraction for fastapi-pulse.
======================================

Defines :class:`PulseStorageProtocol` — the single interface that all
storage backends must satisfy.

Rules:
  - The scheduler and registry speak only to ``PulseStorageProtocol``.
  - The notifier speaks only to ``PulseStorageProtocol``.
  - The API router speaks only to ``PulseStorageProtocol``.
  - No module outside the ``storage/`` package knows whether memory,
    SQLite, or PostgreSQL is in use.

Adding a new backend
---------------------
1. Create ``storage/my_backend.py`` implementing all methods below.
2. Register it in ``storage/__init__.py :: make_storage()``.
3. Add the backend name to ``PulseConfig.storage_backend``.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from fastapi_pulse.schema import (
    Endpoint,
    EndpointCreate,
    EndpointStatus,
    EndpointUpdate,
    ProbeOutcome,
    WebhookDelivery,
)


@runtime_checkable
class PulseStorageProtocol(Protocol):
    """
    Contract for all fastapi-pulse storage backends.

    Read and CRUD methods may raise; the scheduler treats a failing
    :meth:`list_enabled_endpoints` as a reconciliation failure and keeps its
    current schedule. :meth:`record_delivery` must never raise.
    """

    # ── Endpoint registry ─────────────────────────────────────────────────

    async def list_endpoints(
        self,
        *,
        enabled: Optional[bool] = None,
        status: Optional[EndpointStatus] = None,
    ) -> list[Endpoint]:
        """Return all endpoints, optionally filtered, oldest first."""
        ...

    async def list_enabled_endpoints(self) -> list[Endpoint]:
        """The desired schedule: every endpoint with ``enabled = true``."""
        ...

    async def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        ...

    async def create_endpoint(self, data: EndpointCreate) -> Endpoint:
        """Insert a new endpoint with ``last_status = unknown``."""
        ...

    async def update_endpoint(
        self, endpoint_id: str, data: EndpointUpdate
    ) -> Optional[Endpoint]:
        """Apply a partial configuration update. Returns None if absent."""
        ...

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Delete the endpoint and its delivery log. Returns False if absent."""
        ...

    # ── Result sink (called by the registry after each probe) ─────────────

    async def update_endpoint_status(
        self, endpoint_id: str, outcome: ProbeOutcome
    ) -> bool:
        """
        Write ``last_status``, ``last_status_code``, ``last_latency_ms``,
        ``last_checked_at`` and ``last_error`` in one update keyed by id.

        Conditional on existence: returns False and writes nothing when the
        endpoint was deleted in the meantime. Never an upsert.
        """
        ...

    # ── Webhook delivery log ──────────────────────────────────────────────

    async def record_delivery(self, delivery: WebhookDelivery) -> None:
        """Append one delivery attempt. Must NEVER raise."""
        ...

    async def list_deliveries(
        self, endpoint_id: str, *, limit: int = 50
    ) -> list[WebhookDelivery]:
        """Newest first."""
        ...

    # ── Maintenance (called by the background worker) ─────────────────────

    async def flush(self) -> None:
        """Apply delivery-log retention (age and count caps)."""
        ...

    async def health(self) -> tuple[bool, str]:
        """
        Probe the backend to confirm it is reachable.

        Returns ``(ok, error_msg)``; ``error_msg`` is empty on success.
        """
        ...

    async def close(self) -> None:
        """Release connections / file handles. Called once on shutdown."""
        ...
