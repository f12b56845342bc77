from datetime import datetime, timedelta, timezone

import pytest

from copychu.core.runtime.run_types import RunRecord, RunStatus
from copychu.storage.runs.inmem_store import InMemoryRunStore


def make_record(run_id: str, *, status=RunStatus.running, started_at=None, pipeline_id="copychu") -> RunRecord:
    return RunRecord(
        run_id=run_id,
        pipeline_id=pipeline_id,
        status=status,
        started_at=started_at or datetime.now(tz=timezone.utc),
        stages=["phase0", "phase1"],
    )


@pytest.mark.asyncio
async def test_run_store_create_and_get():
    store = InMemoryRunStore()
    rec = make_record("run-1")
    rec.params["PRODUCT_LIMIT"] = "3"

    await store.create(rec)

    loaded = await store.get("run-1")
    assert loaded is not None
    assert loaded.run_id == "run-1"
    assert loaded.pipeline_id == "copychu"
    assert loaded.status == RunStatus.running
    assert loaded.params == {"PRODUCT_LIMIT": "3"}

    # ensure it's a copy (mutations don't leak back)
    loaded.params["PRODUCT_LIMIT"] = "99"
    again = await store.get("run-1")
    assert again.params == {"PRODUCT_LIMIT": "3"}
    assert await store.get("run-missing") is None


@pytest.mark.asyncio
async def test_run_store_save_replaces_record():
    store = InMemoryRunStore()
    now = datetime.now(tz=timezone.utc)
    rec = make_record("run-2", started_at=now)
    await store.create(rec)

    rec.status = RunStatus.failed
    rec.ended_at = now + timedelta(seconds=5)
    rec.error = "boom"
    await store.save(rec)

    loaded = await store.get("run-2")
    assert loaded.status == RunStatus.failed
    assert loaded.ended_at == now + timedelta(seconds=5)
    assert loaded.error == "boom"


@pytest.mark.asyncio
async def test_run_store_list_filters_and_sorts():
    store = InMemoryRunStore()
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await store.create(make_record("run-1", status=RunStatus.succeeded, started_at=base))
    await store.create(make_record("run-2", status=RunStatus.failed, started_at=base + timedelta(seconds=10)))
    await store.create(
        make_record("run-3", status=RunStatus.succeeded, started_at=base + timedelta(seconds=20), pipeline_id="other")
    )

    # list all
    all_runs = await store.list()
    assert [r.run_id for r in all_runs] == ["run-3", "run-2", "run-1"]

    # filter by pipeline_id
    mine = await store.list(pipeline_id="copychu")
    assert {r.run_id for r in mine} == {"run-1", "run-2"}

    # filter by status
    succ = await store.list(status=RunStatus.succeeded)
    assert {r.run_id for r in succ} == {"run-1", "run-3"}

    assert [r.run_id for r in await store.list(limit=1)] == ["run-3"]


@pytest.mark.asyncio
async def test_run_store_evicts_oldest_terminal_runs_first():
    store = InMemoryRunStore(max_records=2)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await store.create(make_record("run-active", status=RunStatus.running, started_at=base))
    await store.create(make_record("run-done", status=RunStatus.succeeded, started_at=base + timedelta(seconds=1)))
    await store.create(make_record("run-new", status=RunStatus.queued, started_at=base + timedelta(seconds=2)))

    ids = {r.run_id for r in await store.list()}
    assert ids == {"run-active", "run-new"}
