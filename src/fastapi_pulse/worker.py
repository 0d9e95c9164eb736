"""
PulseWorker: background asyncio task that keeps the schedule in sync with
the store.

Lifecycle:
  - start() schedules an asyncio Task via ensure_future()
  - stop()  cancels the task, then shuts the scheduler down
  - Both are called by the lifespan wrapper in __init__.py

Every cycle the worker:
  1. Reconciles the scheduler against the store's enabled endpoints
  2. Applies delivery-log retention (via storage.flush, internally throttled)
  3. Waits until notify_change() is called or reconcile_interval_seconds
     elapses, whichever comes first
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from fastapi_pulse.config import PulseConfig
    from fastapi_pulse.scheduler import PulseScheduler
    from fastapi_pulse.storage.base import PulseStorageProtocol

logger = structlog.get_logger(__name__)


class PulseWorker:
    def __init__(
        self,
        config: "PulseConfig",
        scheduler: "PulseScheduler",
        storage: "PulseStorageProtocol",
    ) -> None:
        self._config = config
        self._scheduler = scheduler
        self._storage = storage
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self.reconcile_cycles = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify_change(self) -> None:
        """Wake the loop so the next reconcile runs now instead of at the next tick."""
        self._wakeup.set()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _cycle(self) -> None:
        """One cycle: reconcile the schedule, then apply retention."""
        await self._scheduler.reconcile()
        self.reconcile_cycles += 1
        await self._storage.flush()

    async def _wait(self) -> None:
        try:
            await asyncio.wait_for(
                self._wakeup.wait(), timeout=self._config.reconcile_interval_seconds
            )
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _loop(self) -> None:
        """Main worker loop. Runs until cancelled."""
        while True:
            try:
                await self._cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("worker_cycle_failed", error=str(exc) or type(exc).__name__)
            await self._wait()

    # ── Public lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Schedule the worker loop as a background asyncio Task."""
        if self._task is None or self._task.done():
            self._wakeup.clear()
            self._task = asyncio.ensure_future(self._loop())
            logger.info(
                "worker_started",
                reconcile_interval_seconds=self._config.reconcile_interval_seconds,
            )

    async def stop(self) -> None:
        """Cancel the background task, then stop every scheduled probe."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._scheduler.shutdown()
