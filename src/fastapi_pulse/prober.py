"""
Single-request liveness probe.
===============================

:class:`Prober` turns one endpoint into one bounded HTTP request and one
:class:`~fastapi_pulse.schema.ProbeOutcome`. It holds no per-endpoint state
and never raises for anything the remote side does: timeouts, refused
connections, TLS errors and non-2xx/3xx responses all come back as ``down``.

Probes are never retried. A failed probe is a ``down``
result; the scheduler tries again on the next tick.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

import httpx
import structlog

from fastapi_pulse.schema import Endpoint, EndpointStatus, ProbeOutcome, redact_url

if TYPE_CHECKING:
    from fastapi_pulse.config import PulseConfig

logger = structlog.get_logger(__name__)

DEFAULT_MIN_TIMEOUT_MS = 3_000
DEFAULT_MAX_TIMEOUT_MS = 15_000
DEFAULT_HEADROOM_MS = 500


def probe_timeout_ms(
    interval_seconds: float,
    *,
    headroom_ms: int = DEFAULT_HEADROOM_MS,
    min_ms: int = DEFAULT_MIN_TIMEOUT_MS,
    max_ms: int = DEFAULT_MAX_TIMEOUT_MS,
) -> int:
    """
    Timeout for one probe of an endpoint checked every *interval_seconds*.

    ``clamp(interval * 1000 - headroom, min, max)``: the headroom keeps a slow
    probe from running into the next tick; the bounds apply whatever the
    interval.
    """
    raw = int(interval_seconds * 1000) - headroom_ms
    return max(min_ms, min(raw, max_ms))


def is_up(status_code: int) -> bool:
    return 200 <= status_code < 400


def _scrub(text: str, url: str) -> str:
    safe = redact_url(url)
    return text if safe == url else text.replace(url, safe)


class Prober:
    """
    Executes probes over a shared ``httpx.AsyncClient``.

    The client is owned by the caller (``setup()`` opens one for the app
    lifespan) so connection pooling is shared across every endpoint.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: Optional["PulseConfig"] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._clock = clock
        if config is not None:
            self._headroom_ms = config.probe_headroom_ms
            self._min_ms = config.probe_min_timeout_ms
            self._max_ms = config.probe_max_timeout_ms
            self._user_agent = config.probe_user_agent
            self._follow_redirects = config.probe_follow_redirects
        else:
            self._headroom_ms = DEFAULT_HEADROOM_MS
            self._min_ms = DEFAULT_MIN_TIMEOUT_MS
            self._max_ms = DEFAULT_MAX_TIMEOUT_MS
            self._user_agent = "fastapi-pulse/0.1"
            self._follow_redirects = True

    def timeout_ms(self, endpoint: Endpoint) -> int:
        return probe_timeout_ms(
            endpoint.interval_seconds,
            headroom_ms=self._headroom_ms,
            min_ms=self._min_ms,
            max_ms=self._max_ms,
        )

    async def probe(self, endpoint: Endpoint) -> ProbeOutcome:
        """Probe *endpoint* once. Always returns within the computed timeout."""
        timeout_ms = self.timeout_ms(endpoint)
        timeout_s = timeout_ms / 1000
        started = self._clock()

        def elapsed_ms() -> int:
            return max(0, int((self._clock() - started) * 1000))

        try:
            request = self._client.build_request(
                endpoint.method,
                endpoint.url,
                headers={
                    "cache-control": "no-store",
                    "user-agent": self._user_agent,
                },
                timeout=timeout_s,
            )
            # Liveness is decided on headers; the body is never read.
            response = await asyncio.wait_for(
                self._client.send(
                    request, stream=True, follow_redirects=self._follow_redirects
                ),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            outcome = ProbeOutcome(
                status=EndpointStatus.DOWN,
                latency_ms=elapsed_ms(),
                error=f"timeout after {timeout_ms}ms",
                observed_at=datetime.now(tz=timezone.utc),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            outcome = ProbeOutcome(
                status=EndpointStatus.DOWN,
                latency_ms=elapsed_ms(),
                error=_scrub(str(exc) or type(exc).__name__, endpoint.url),
                observed_at=datetime.now(tz=timezone.utc),
            )
        else:
            try:
                outcome = ProbeOutcome(
                    status=EndpointStatus.UP if is_up(response.status_code) else EndpointStatus.DOWN,
                    status_code=response.status_code,
                    latency_ms=elapsed_ms(),
                    observed_at=datetime.now(tz=timezone.utc),
                )
            finally:
                await response.aclose()

        logger.debug(
            "probe_completed",
            endpoint_id=endpoint.id,
            url=redact_url(endpoint.url),
            status=outcome.status.value,
            status_code=outcome.status_code,
            latency_ms=outcome.latency_ms,
            error=outcome.error,
        )
        return outcome
