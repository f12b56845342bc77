import asyncio
from datetime import datetime, timezone
import json

import pytest

from copychu.services.channel.event_hub import ALL, EventHub
from copychu.services.quota.monitor import QuotaMonitor
from copychu.services.quota.quota_guard import QuotaGuard
from copychu.storage.quota.fs_quota_store import FSQuotaStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
TODAY = "2026-03-01"


def write_record(path, count: int) -> None:
    path.write_text(json.dumps({"date": TODAY, "callCount": count}), encoding="utf-8")


async def next_event(handle):
    return await asyncio.wait_for(handle.get(), timeout=5)


@pytest.mark.asyncio
async def test_monitor_relays_state_and_threshold_crossings(tmp_path):
    path = tmp_path / "stats.json"
    write_record(path, 999)
    hub = EventHub()
    guard = QuotaGuard(FSQuotaStore(path), clock=lambda: NOW)
    monitor = QuotaMonitor(guard, hub, interval_s=60)
    handle = hub.subscribe(ALL, replay=False)

    await monitor.start()
    try:
        initial = await next_event(handle)
        assert initial.type == "quota.state"
        assert initial.payload["callCount"] == 999

        # thresholds reached in a worker thread
        await asyncio.to_thread(guard.record_call, "generateImage")
        notice = await next_event(handle)
        assert notice.type == "quota.threshold"
        assert notice.payload["threshold"] == 1000
        assert notice.to_dict()["kind"] == "quota"

        monitor.publish_state()
        state = await next_event(handle)
        assert state.payload["callCount"] == 1000
        assert state.payload["remaining"] == 500
        monitor.publish_state()
        assert handle.pending == 0

        # crossing made by a stage process
        write_record(path, 1500)
        await monitor.poll_once()
        crossed = await next_event(handle)
        after = await next_event(handle)
        assert crossed.type == "quota.threshold"
        assert crossed.payload["threshold"] == 1500
        assert after.payload["remaining"] == 0
    finally:
        await monitor.stop()
