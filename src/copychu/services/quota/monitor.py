from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging

from copychu.core.runtime.run_types import QuotaEvent
from copychu.services.channel.event_hub import EventHub
from copychu.services.quota.quota_guard import QuotaGuard, ThresholdNotice

logger = logging.getLogger("copychu.quota.monitor")


class QuotaMonitor:
    """
    Publishes the quota budget through the EventHub.

    Stage processes write the durable record directly, so the monitor re-reads
    it every `interval_s` and relays the remaining budget plus any threshold
    crossings to all observers.
    """

    def __init__(self, guard: QuotaGuard, hub: EventHub, *, interval_s: float = 5.0):
        self._guard = guard
        self._hub = hub
        self._interval_s = interval_s
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._last_published: tuple[str, int] | None = None

    def _on_notice(self, notice: ThresholdNotice) -> None:
        # listeners may fire from worker threads (record_call via to_thread)
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        event = QuotaEvent("quota.threshold", notice.to_payload(), datetime.now(timezone.utc))
        loop.call_soon_threadsafe(self._hub.publish, event)

    def publish_state(self, *, force: bool = False) -> None:
        snap = self._guard.snapshot()
        key = (snap["date"], snap["callCount"])
        if not force and key == self._last_published:
            return
        self._last_published = key
        payload = {k: snap[k] for k in ("date", "callCount", "limit", "remaining", "perFunctionCounts")}
        self._hub.publish(QuotaEvent("quota.state", payload, datetime.now(timezone.utc)))

    async def poll_once(self) -> None:
        await asyncio.to_thread(self._guard.refresh)
        self.publish_state()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._guard.add_listener(self._on_notice)
        await asyncio.to_thread(self._guard.load)
        self.publish_state(force=True)
        self._task = asyncio.create_task(self._run(), name="quota-monitor")

    async def stop(self) -> None:
        self._guard.remove_listener(self._on_notice)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Quota refresh failed")
