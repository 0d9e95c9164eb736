"""
Transition detection and notification scheduling for fastapi-pulse.
====================================================================

Single responsibility: decide whether a completed probe is an up/down
transition and, if so, schedule the webhook as a fire-and-forget asyncio
background task.

This module is isolated from probing and storage writes. It knows only about
statuses, endpoints and the notifier.

Consumed by :mod:`fastapi_pulse.scheduler`.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog

from fastapi_pulse.notifiers import WebhookNotifier
from fastapi_pulse.schema import (
    Endpoint,
    EndpointStatus,
    StatusChangePayload,
    WebhookEndpointRef,
    redact_url,
)

logger = structlog.get_logger(__name__)

_KNOWN = (EndpointStatus.UP, EndpointStatus.DOWN)


def is_transition(
    previous: Optional[EndpointStatus], current: EndpointStatus
) -> bool:
    """
    True only for ``up -> down`` and ``down -> up``.

    The first probe of an endpoint (previous ``unknown`` or absent) is never
    a transition, and neither is a repeated status.
    """
    return previous in _KNOWN and current in _KNOWN and previous != current


def build_payload(
    endpoint: Endpoint,
    previous: EndpointStatus,
    current: EndpointStatus,
    *,
    occurred_at: Optional[datetime] = None,
) -> StatusChangePayload:
    return StatusChangePayload(
        occurred_at=occurred_at or datetime.now(tz=timezone.utc),
        endpoint=WebhookEndpointRef(id=endpoint.id, url=endpoint.url, method=endpoint.method),
        previous_status=previous,
        current_status=current,
    )


class NotificationDispatcher:
    """
    Schedules webhook deliveries without awaiting them.

    Each delivery runs via ``asyncio.ensure_future``; a strong reference is
    held until the task finishes so it is not garbage-collected mid-flight.
    :meth:`drain` waits for outstanding deliveries (shutdown, tests).
    """

    def __init__(self, notifier: WebhookNotifier) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify_transition(
        self,
        endpoint: Endpoint,
        previous: EndpointStatus,
        current: EndpointStatus,
        *,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[asyncio.Future]:
        """
        Schedule a delivery for *endpoint* and return immediately.

        Returns the scheduled task, or None when the endpoint has no
        ``webhook_url``. Never raises.
        """
        if not endpoint.webhook_url:
            return None
        try:
            payload = build_payload(endpoint, previous, current, occurred_at=occurred_at)
            task = asyncio.ensure_future(self._notifier.send(endpoint, payload))
        except Exception as exc:  # noqa: BLE001
            logger.warning("webhook_schedule_failed", endpoint_id=endpoint.id, error=str(exc))
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(
            "webhook_scheduled",
            endpoint_id=endpoint.id,
            target_url=redact_url(endpoint.webhook_url),
        )
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
