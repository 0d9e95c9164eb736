"""
In-memory mirror of the enabled endpoint set.
==============================================

:class:`EndpointRegistry` is what the scheduler reconciles against and where
a probe cycle reads the *previous* status from. It is refreshed from the
store by :meth:`EndpointRegistry.sync` and updated per endpoint by
:meth:`EndpointRegistry.record`, which is also the result sink: the store
write and the mirror update happen together, keyed by one endpoint id.

Only one probe per endpoint is ever in flight, so read-previous-then-record
for a given id never races with itself. A concurrent :meth:`sync` keeps the
fresher of the two status snapshots, never rolling a recorded result back.
"""
from __future__ import annotations

from typing import Optional

import structlog

from fastapi_pulse.schema import Endpoint, EndpointStatus, ProbeOutcome
from fastapi_pulse.storage.base import PulseStorageProtocol

logger = structlog.get_logger(__name__)

_STATUS_FIELDS = (
    "last_status",
    "last_status_code",
    "last_latency_ms",
    "last_checked_at",
    "last_error",
)


def _is_staler(candidate: Endpoint, current: Endpoint) -> bool:
    """True when *candidate* carries an older probe result than *current*."""
    if current.last_checked_at is None:
        return False
    if candidate.last_checked_at is None:
        return True
    return candidate.last_checked_at < current.last_checked_at


class EndpointRegistry:
    def __init__(self, storage: PulseStorageProtocol) -> None:
        self._storage = storage
        self._endpoints: dict[str, Endpoint] = {}

    # ── Sync from the store ────────────────────────────────────────────────

    async def sync(self) -> list[Endpoint]:
        """
        Replace the mirror with the store's current enabled set.

        Raises whatever the store raises; the caller keeps its schedule.
        """
        fresh = await self._storage.list_enabled_endpoints()
        mirror: dict[str, Endpoint] = {}
        for ep in fresh:
            known = self._endpoints.get(ep.id)
            if known is not None and _is_staler(ep, known):
                ep = ep.model_copy(
                    update={f: getattr(known, f) for f in _STATUS_FIELDS}
                )
            mirror[ep.id] = ep
        self._endpoints = mirror
        return list(mirror.values())

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, endpoint_id: str) -> Optional[Endpoint]:
        return self._endpoints.get(endpoint_id)

    def enabled(self) -> list[Endpoint]:
        return [ep for ep in self._endpoints.values() if ep.enabled]

    def previous_status(self, endpoint_id: str) -> Optional[EndpointStatus]:
        ep = self._endpoints.get(endpoint_id)
        return ep.last_status if ep is not None else None

    def __contains__(self, endpoint_id: object) -> bool:
        return endpoint_id in self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    # ── Result sink ────────────────────────────────────────────────────────

    async def record(self, endpoint_id: str, outcome: ProbeOutcome) -> bool:
        """
        Persist *outcome* as the endpoint's latest status.

        Returns False, writing nothing, when the endpoint no longer exists in
        the store; the mirror entry is dropped so the next reconcile stops it.
        """
        written = await self._storage.update_endpoint_status(endpoint_id, outcome)
        if not written:
            self._endpoints.pop(endpoint_id, None)
            logger.debug("probe_result_dropped", endpoint_id=endpoint_id, reason="endpoint_missing")
            return False

        ep = self._endpoints.get(endpoint_id)
        if ep is not None:
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

    def discard(self, endpoint_id: str) -> None:
        self._endpoints.pop(endpoint_id, None)
