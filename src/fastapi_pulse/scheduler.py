"""
PulseScheduler: one asyncio task per enabled endpoint.
=======================================================

The scheduler owns every live task handle. Nothing else starts or cancels
probe tasks, and the handle map is only mutated inside :meth:`reconcile`
(and :meth:`shutdown`), which are serialized by a single ``asyncio.Lock``.

Per endpoint
------------
* Entering the schedule starts one probe immediately, then another
  ``interval_seconds`` after each probe *completes*. The cadence is anchored
  to completion, so two probes of one endpoint never overlap however slow
  the target is.
* The in-flight probe is kept as a future on the handle. A manual
  :meth:`trigger_immediate_check`, or the loop waking while a manual probe is
  still running, awaits that future instead of starting a second request.
* Stopping a handle marks it cancelled, cancels its loop and its in-flight
  probe. A cancelled handle never writes a result nor evaluates a transition.

Reconciliation
--------------
``desired = store.list_enabled_endpoints()``; missing ids are started, ids no
longer desired are stopped, ids whose url / method / interval / webhook
changed are restarted (stop then fresh start). Running it twice without an
intervening change does nothing. If the store is unreachable the error is
logged and the current schedule is kept as is.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from fastapi_pulse.alerting import NotificationDispatcher, is_transition
from fastapi_pulse.exceptions import EndpointNotFound, EndpointNotScheduled
from fastapi_pulse.metrics import PulseMetrics
from fastapi_pulse.prober import Prober
from fastapi_pulse.registry import EndpointRegistry
from fastapi_pulse.schema import Endpoint, ProbeOutcome, ReconcileResult, redact_url
from fastapi_pulse.storage.base import PulseStorageProtocol

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class _ScheduledEndpoint:
    """Live handle for one scheduled endpoint."""

    __slots__ = ("endpoint", "fingerprint", "task", "current", "cancelled")

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.fingerprint = endpoint.fingerprint()
        self.task: Optional[asyncio.Future] = None
        self.current: Optional[asyncio.Future] = None
        self.cancelled = False

    @property
    def in_flight(self) -> bool:
        return self.current is not None and not self.current.done()


class PulseScheduler:
    def __init__(
        self,
        storage: PulseStorageProtocol,
        prober: Prober,
        *,
        registry: Optional[EndpointRegistry] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        metrics: Optional[PulseMetrics] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._prober = prober
        self._registry = registry if registry is not None else EndpointRegistry(storage)
        self._dispatcher = dispatcher
        self._metrics = metrics
        self._sleep = sleep
        self._handles: dict[str, _ScheduledEndpoint] = {}
        self._lock = asyncio.Lock()

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    @property
    def scheduled_ids(self) -> list[str]:
        return sorted(self._handles)

    @property
    def in_flight_ids(self) -> list[str]:
        return sorted(eid for eid, h in self._handles.items() if h.in_flight)

    @property
    def pending_notifications(self) -> int:
        return self._dispatcher.pending if self._dispatcher is not None else 0

    def is_scheduled(self, endpoint_id: str) -> bool:
        return endpoint_id in self._handles

    # ── Reconciliation ───────────────────────────────────────────────────────

    async def reconcile(self) -> Optional[ReconcileResult]:
        """
        Align live tasks with the store's enabled endpoint set.

        Returns what changed, or None when the store could not be read (the
        existing schedule is then left untouched).
        """
        async with self._lock:
            try:
                desired = await self._registry.sync()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "reconcile_failed",
                    error=str(exc) or type(exc).__name__,
                    kept_scheduled=len(self._handles),
                )
                return None

            wanted = {ep.id: ep for ep in desired if ep.enabled}
            result = ReconcileResult()

            for endpoint_id in list(self._handles):
                if endpoint_id not in wanted:
                    self._stop(self._handles.pop(endpoint_id))
                    if self._metrics is not None:
                        self._metrics.forget(endpoint_id)
                    result.stopped.append(endpoint_id)

            for endpoint_id, endpoint in wanted.items():
                handle = self._handles.get(endpoint_id)
                if handle is None:
                    self._handles[endpoint_id] = self._start(endpoint)
                    result.started.append(endpoint_id)
                elif handle.fingerprint != endpoint.fingerprint() or handle.task.done():
                    self._stop(handle)
                    self._handles[endpoint_id] = self._start(endpoint)
                    result.restarted.append(endpoint_id)
                else:
                    handle.endpoint = endpoint
                    result.unchanged += 1

            if result.changed:
                logger.info(
                    "schedule_reconciled",
                    started=len(result.started),
                    stopped=len(result.stopped),
                    restarted=len(result.restarted),
                    unchanged=result.unchanged,
                )
            return result

    # ── Manual checks ────────────────────────────────────────────────────────

    async def trigger_immediate_check(self, endpoint_id: str) -> Optional[ProbeOutcome]:
        """
        Probe *endpoint_id* now without disturbing its regular cadence.

        Coalesces with a probe already in flight for the same endpoint.
        Returns None when the endpoint was unscheduled before the probe
        finished (its result is discarded).

        Raises:
            EndpointNotFound: the id is not in the store.
            EndpointNotScheduled: the endpoint exists but is disabled.
        """
        handle = self._handles.get(endpoint_id)
        if handle is None:
            endpoint = await self._storage.get_endpoint(endpoint_id)
            if endpoint is None:
                raise EndpointNotFound(endpoint_id)
            if endpoint.enabled:
                # Created or re-enabled since the last reconcile pass.
                await self.reconcile()
                handle = self._handles.get(endpoint_id)
            if handle is None:
                raise EndpointNotScheduled(endpoint_id)

        fut = self._probe_future(handle)
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            if fut.cancelled():
                return None
            raise

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop every task and wait for outstanding webhook deliveries."""
        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            for handle in handles:
                self._stop(handle)

        pending = [
            fut
            for handle in handles
            for fut in (handle.task, handle.current)
            if fut is not None
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._dispatcher is not None:
            await self._dispatcher.drain()
        logger.info("scheduler_stopped", stopped=len(handles))

    # ── Internals ────────────────────────────────────────────────────────────

    def _start(self, endpoint: Endpoint) -> _ScheduledEndpoint:
        handle = _ScheduledEndpoint(endpoint)
        # The first probe exists before the loop task runs, so a manual check
        # issued right after reconcile coalesces with it.
        first = self._probe_future(handle)
        handle.task = asyncio.ensure_future(self._run(handle, first))
        logger.debug(
            "endpoint_scheduled",
            endpoint_id=endpoint.id,
            url=redact_url(endpoint.url),
            interval_seconds=endpoint.interval_seconds,
        )
        return handle

    def _stop(self, handle: _ScheduledEndpoint) -> None:
        handle.cancelled = True
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        if handle.current is not None and not handle.current.done():
            handle.current.cancel()
        logger.debug("endpoint_unscheduled", endpoint_id=handle.endpoint.id)

    def _probe_future(self, handle: _ScheduledEndpoint) -> asyncio.Future:
        fut = handle.current
        if fut is None or fut.done():
            fut = asyncio.ensure_future(self._execute(handle))
            handle.current = fut
            fut.add_done_callback(lambda f, h=handle: self._probe_done(h, f))
        return fut

    @staticmethod
    def _probe_done(handle: _ScheduledEndpoint, fut: asyncio.Future) -> None:
        if handle.current is fut:
            handle.current = None
        if not fut.cancelled() and fut.exception() is not None:
            logger.error(
                "probe_cycle_failed",
                endpoint_id=handle.endpoint.id,
                error=str(fut.exception()),
            )

    async def _run(self, handle: _ScheduledEndpoint, first: asyncio.Future) -> None:
        """Probe, wait ``interval_seconds`` after completion, repeat. Runs until cancelled."""
        fut = first
        while not handle.cancelled:
            try:
                await fut
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                pass  # already logged by _probe_done; never crash the loop
            await self._sleep(handle.endpoint.interval_seconds)
            fut = self._probe_future(handle)

    async def _execute(self, handle: _ScheduledEndpoint) -> Optional[ProbeOutcome]:
        """One probe cycle: probe, record, evaluate the transition."""
        endpoint = handle.endpoint
        outcome = await self._prober.probe(endpoint)

        if handle.cancelled:
            logger.debug("probe_result_discarded", endpoint_id=endpoint.id)
            return None

        previous = self._registry.previous_status(endpoint.id)
        try:
            written = await self._registry.record(endpoint.id, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "probe_result_write_failed",
                endpoint_id=endpoint.id,
                error=str(exc) or type(exc).__name__,
            )
            return outcome

        if not written or handle.cancelled:
            return None

        if self._metrics is not None:
            await self._metrics.record(endpoint.id, outcome)

        if is_transition(previous, outcome.status):
            logger.info(
                "status_changed",
                endpoint_id=endpoint.id,
                url=redact_url(endpoint.url),
                previous_status=previous.value,
                current_status=outcome.status.value,
            )
            if self._dispatcher is not None:
                self._dispatcher.notify_transition(
                    endpoint,
                    previous,
                    outcome.status,
                    occurred_at=outcome.observed_at,
                )
        return outcome
