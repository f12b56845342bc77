import asyncio
import os
import sys
import time

import pytest

from copychu.config.pipeline import PipelineSettings, StageSpec
from copychu.contracts.errors.errors import (
    AlreadyRunning,
    DuplicateRunId,
    NotCancellable,
    RunNotFound,
    UnknownPipeline,
    UnknownStage,
)
from copychu.core.runtime.run_manager import RunManager
from copychu.core.runtime.run_types import FailureReason, RunStatus, StageOutcome
from copychu.services.channel.event_hub import EventHub
from copychu.services.execution.stage_supervisor import StageSupervisor
from copychu.storage.runs.inmem_store import InMemoryRunStore

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals")


def stage(name: str, code: str) -> StageSpec:
    return StageSpec(name=name, command=[sys.executable, "-u", "-c", code])


def make_manager(tmp_path, stages, *, stage_gap_s: float = 0.0, max_records: int = 100):
    hub = EventHub()
    sup = StageSupervisor(hub, grace_period_s=2.0)
    rm = RunManager(
        pipelines={"copychu": PipelineSettings(scripts_dir=str(tmp_path), stages=stages)},
        supervisor=sup,
        hub=hub,
        run_store=InMemoryRunStore(max_records=max_records),
        stage_gap_s=stage_gap_s,
        base_env={"COPYCHU_WORKSPACE": str(tmp_path)},
    )
    return rm, hub


async def wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_all_stages_succeed(tmp_path):
    rm, hub = make_manager(
        tmp_path,
        [stage("s1", "print('a')"), stage("s2", "print('b')"), stage("s3", "print('c')")],
    )
    record = await rm.trigger("copychu")
    assert record.status == RunStatus.queued

    final = await rm.wait(record.run_id, timeout=20)

    assert final.status == RunStatus.succeeded
    assert final.ended_at is not None
    assert [r.outcome for r in final.stage_results] == [StageOutcome.success] * 3
    assert final.current_stage_index == 2
    assert rm.active_run_id("copychu") is None

    events = hub.recent(final.run_id, limit=0)
    seqs = [e.seq for e in events]
    assert seqs == sorted(seqs) and len(seqs) == len(set(seqs))

    runs = [e for e in events if e.kind == "transition" and e.stage_outcome is None]
    assert runs[0].status == RunStatus.queued
    assert runs[1].status == RunStatus.running and runs[1].previous == RunStatus.queued
    assert runs[-1].status == RunStatus.succeeded and runs[-1].previous == RunStatus.running


@pytest.mark.asyncio
async def test_stage_failure_ends_the_run(tmp_path):
    marker = tmp_path / "stage3-ran"
    rm, hub = make_manager(
        tmp_path,
        [
            stage("s1", "print('ok')"),
            stage("s2", "import sys; print('bad input'); sys.exit(2)"),
            stage("s3", f"open({str(marker)!r}, 'w').close()"),
        ],
    )
    record = await rm.trigger("copychu")
    final = await rm.wait(record.run_id, timeout=20)

    assert final.status == RunStatus.failed
    assert final.reason == FailureReason.exit_code
    assert final.current_stage_index == 1
    assert final.current_stage == "s2"
    assert [r.stage_name for r in final.stage_results] == ["s1", "s2"]
    assert final.stage_results[1].exit_code == 2
    assert not marker.exists()
    assert not [e for e in hub.recent(final.run_id, limit=0) if getattr(e, "stage_name", None) == "s3"]


@pytest.mark.asyncio
async def test_stage_transition_follows_its_log_lines(tmp_path):
    rm, hub = make_manager(tmp_path, [stage("s1", "for i in range(20): print(i)")])
    record = await rm.trigger("copychu")
    await rm.wait(record.run_id, timeout=20)

    events = hub.recent(record.run_id, limit=0)
    finished = next(
        i for i, e in enumerate(events)
        if e.kind == "transition" and e.stage_outcome == StageOutcome.success
    )
    last_log = max(i for i, e in enumerate(events) if e.kind == "log")
    assert last_log < finished


@pytest.mark.asyncio
async def test_second_trigger_conflicts_while_active(tmp_path):
    rm, hub = make_manager(tmp_path, [stage("s1", "import time; print('go'); time.sleep(2)")])
    first = await rm.trigger("copychu")

    with pytest.raises(AlreadyRunning) as err:
        await rm.trigger("copychu")
    assert err.value.run_id == first.run_id

    await rm.wait(first.run_id, timeout=20)
    again = await rm.trigger("copychu")
    assert again.run_id != first.run_id
    await rm.wait(again.run_id, timeout=20)


@posix_only
@pytest.mark.asyncio
async def test_cancel_is_idempotent(tmp_path):
    marker = tmp_path / "s2-ran"
    rm, hub = make_manager(
        tmp_path,
        [
            stage("s1", "import time; print('working'); time.sleep(60)"),
            stage("s2", f"open({str(marker)!r}, 'w').close()"),
        ],
    )
    record = await rm.trigger("copychu")
    await wait_until(lambda: hub.recent(record.run_id, kind="log"))

    requested = await rm.cancel(record.run_id)
    assert requested.cancel_requested is True
    with pytest.raises(NotCancellable):
        await rm.cancel(record.run_id)

    final = await rm.wait(record.run_id, timeout=20)
    assert final.status == RunStatus.cancelled
    assert final.stage_results[0].outcome == StageOutcome.cancelled
    assert not marker.exists()

    for _ in range(2):
        with pytest.raises(NotCancellable):
            await rm.cancel(record.run_id)


@pytest.mark.asyncio
async def test_cancel_between_stages_stops_before_next_stage(tmp_path):
    rm, hub = make_manager(
        tmp_path,
        [stage("s1", "print('done')"), stage("s2", "print('never')")],
        stage_gap_s=30.0,
    )
    record = await rm.trigger("copychu")
    await wait_until(
        lambda: any(
            e.kind == "transition" and e.stage_outcome == StageOutcome.success
            for e in hub.recent(record.run_id, limit=0)
        )
    )

    await rm.cancel(record.run_id)
    final = await rm.wait(record.run_id, timeout=5)

    assert final.status == RunStatus.cancelled
    assert [r.stage_name for r in final.stage_results] == ["s1"]


@pytest.mark.asyncio
async def test_cancel_unknown_run():
    rm, _ = make_manager(".", [stage("s1", "pass")])
    with pytest.raises(RunNotFound):
        await rm.cancel("run-missing")


@pytest.mark.asyncio
async def test_stage_subset_and_params(tmp_path):
    rm, hub = make_manager(
        tmp_path,
        [
            stage("s1", "import os; print('s1', os.environ['PRODUCT_LIMIT'])"),
            stage("s2", "print('s2')"),
            stage("s3", "import os; print('s3', os.environ['COPYCHU_STAGE'], os.environ['COPYCHU_RUN_ID'])"),
        ],
    )
    record = await rm.trigger("copychu", stages=["s3", "s1"], params={"PRODUCT_LIMIT": "5"})
    assert record.stages == ["s1", "s3"]

    final = await rm.wait(record.run_id, timeout=20)
    assert final.status == RunStatus.succeeded
    texts = [e.text for e in hub.recent(record.run_id, kind="log")]
    assert texts == ["s1 5", f"s3 s3 {record.run_id}"]


@pytest.mark.asyncio
async def test_invalid_trigger_input(tmp_path):
    rm, _ = make_manager(tmp_path, [stage("s1", "pass")])
    with pytest.raises(UnknownPipeline):
        await rm.trigger("nope")
    with pytest.raises(UnknownStage):
        await rm.trigger("copychu", stages=["s1", "s9"])
    with pytest.raises(ValueError):
        await rm.trigger("copychu", stages=[])
    assert rm.active_run_id("copychu") is None


@pytest.mark.asyncio
async def test_spawn_failure_fails_the_run(tmp_path):
    rm, hub = make_manager(tmp_path, [StageSpec(name="s1", command=[str(tmp_path / "missing-binary")])])
    record = await rm.trigger("copychu")
    final = await rm.wait(record.run_id, timeout=10)

    assert final.status == RunStatus.failed
    assert final.reason == FailureReason.spawn_failed
    assert final.stage_results[0].reason == FailureReason.spawn_failed
    last = hub.recent(record.run_id, kind="transition")[-1]
    assert last.status == RunStatus.failed and last.previous == RunStatus.queued


@pytest.mark.asyncio
async def test_history_is_bounded(tmp_path):
    rm, _ = make_manager(tmp_path, [stage("s1", "pass")], max_records=2)
    ids = []
    for _ in range(3):
        rec = await rm.trigger("copychu")
        await rm.wait(rec.run_id, timeout=10)
        ids.append(rec.run_id)

    listed = await rm.list_records()
    assert {r.run_id for r in listed} == set(ids[1:])
    assert await rm.get_record(ids[0]) is None


@pytest.mark.asyncio
async def test_caller_chosen_run_id_must_be_unused(tmp_path):
    hub = EventHub()
    sup = StageSupervisor(hub, grace_period_s=2.0)
    rm = RunManager(
        pipelines={
            "a": PipelineSettings(scripts_dir=str(tmp_path), stages=[stage("s1", "import time; print('a'); time.sleep(1)")]),
            "b": PipelineSettings(scripts_dir=str(tmp_path), stages=[stage("s1", "print('b')")]),
        },
        supervisor=sup,
        hub=hub,
    )
    first = await rm.trigger("a", run_id="nightly")

    # another pipeline cannot take over a live id
    with pytest.raises(DuplicateRunId):
        await rm.trigger("b", run_id="nightly")
    assert rm.active_run_id("a") == "nightly"
    assert rm.active_run_id("b") is None

    final = await rm.wait(first.run_id, timeout=20)
    assert final.pipeline_id == "a"
    assert final.status == RunStatus.succeeded

    # nor reuse a finished one
    with pytest.raises(DuplicateRunId):
        await rm.trigger("a", run_id="nightly")

    seqs = [e.seq for e in hub.recent("nightly", limit=0)]
    assert len(seqs) == len(set(seqs))

    other = await rm.trigger("b", run_id="nightly-2")
    assert (await rm.wait(other.run_id, timeout=20)).status == RunStatus.succeeded
