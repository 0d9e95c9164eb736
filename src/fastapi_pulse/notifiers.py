"""
Webhook notifier for fastapi-pulse.
====================================

POSTs a :class:`~fastapi_pulse.schema.StatusChangePayload` to an endpoint's
``webhook_url`` when the endpoint flips between ``up`` and ``down``.

Delivery is *fire-and-forget*: :meth:`WebhookNotifier.send` runs as a
background asyncio task (see :mod:`fastapi_pulse.alerting`), tries exactly
once, records the attempt in the delivery log and never raises, so a slow or
broken receiver can't delay the next probe of any endpoint.

Usage::

    notifier = WebhookNotifier(client, storage, timeout_seconds=8.0)
    await notifier.send(endpoint, payload)
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import structlog

from fastapi_pulse.schema import Endpoint, StatusChangePayload, WebhookDelivery, redact_url
from fastapi_pulse.storage.base import PulseStorageProtocol

logger = structlog.get_logger(__name__)


class WebhookNotifier:
    """
    Generic HTTP POST notifier.

    Posts the payload as JSON to the endpoint's ``webhook_url``. A delivery
    counts as successful only on a 2xx answer; anything else, including a
    timeout or a refused connection, is logged and recorded as failed.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        storage: Optional[PulseStorageProtocol] = None,
        *,
        timeout_seconds: float = 8.0,
        headers: Optional[dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._storage = storage
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}
        self._clock = clock

    async def send(self, endpoint: Endpoint, payload: StatusChangePayload) -> Optional[WebhookDelivery]:
        """
        Fire the webhook. Called as a background asyncio task.

        Returns the recorded delivery, or None when *endpoint* has no
        ``webhook_url``. Never raises.
        """
        target = endpoint.webhook_url
        if not target:
            return None

        body = payload.model_dump(mode="json")
        started = self._clock()
        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            response = await self._client.post(
                target,
                json=body,
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
            status_code = response.status_code
            if not response.is_success:
                error = f"HTTP {status_code}"
        except httpx.TimeoutException:
            error = f"timeout after {int(self.timeout_seconds * 1000)}ms"
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or type(exc).__name__

        delivery = WebhookDelivery(
            id=str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            target_url=target,
            success=error is None,
            status_code=status_code,
            response_ms=max(0, int((self._clock() - started) * 1000)),
            error=error,
            sent_at=datetime.now(tz=timezone.utc),
            payload=body,
        )

        if delivery.success:
            logger.info(
                "webhook_delivered",
                endpoint_id=endpoint.id,
                target_url=redact_url(target),
                status_code=status_code,
                current_status=payload.current_status.value,
            )
        else:
            logger.warning(
                "webhook_delivery_failed",
                endpoint_id=endpoint.id,
                target_url=redact_url(target),
                status_code=status_code,
                error=error,
            )

        if self._storage is not None:
            try:
                await self._storage.record_delivery(delivery)
            except Exception as exc:  # noqa: BLE001
                logger.warning("delivery_log_write_failed", endpoint_id=endpoint.id, error=str(exc))
        return delivery
