from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
from uuid import uuid4

from copychu.config.pipeline import PipelineSettings, StageSpec
from copychu.contracts.errors.errors import (
    AlreadyRunning,
    DuplicateRunId,
    NotCancellable,
    RunNotFound,
    StageLaunchError,
    UnknownPipeline,
    UnknownStage,
)
from copychu.contracts.services.runs import RunStore
from copychu.core.runtime.run_types import (
    FailureReason,
    RunRecord,
    RunStatus,
    StageOutcome,
    StageResult,
    StateTransition,
)
from copychu.services.channel.event_hub import EventHub
from copychu.services.execution.stage_supervisor import StageHandle, StageSupervisor
from copychu.services.logger.base import LoggerService
from copychu.storage.runs.inmem_store import InMemoryRunStore

logger = logging.getLogger("copychu.runtime.run_manager")


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class _LiveRun:
    record: RunRecord
    pipeline: PipelineSettings
    stage_args: dict[str, list[str]] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done_event: asyncio.Event = field(default_factory=asyncio.Event)
    handle: StageHandle | None = None
    task: asyncio.Task | None = None


class RunManager:
    """
    Run state machine.

    - trigger() creates a Queued run and drives its stages in the background,
      one StageSupervisor process at a time.
    - At most one Queued/Running run per pipeline (AlreadyRunning otherwise).
    - A failed stage ends the run (Failed); no automatic retries.
    - cancel() stops the active stage and prevents further stages (Cancelled).

    Only RunManager mutates run records; everything else reads copies from
    the RunStore.
    """

    def __init__(
        self,
        *,
        pipelines: Mapping[str, PipelineSettings],
        supervisor: StageSupervisor,
        hub: EventHub,
        run_store: RunStore | None = None,
        stage_gap_s: float = 0.0,
        base_env: Mapping[str, str] | None = None,
        logger_factory: LoggerService | None = None,
    ):
        self._pipelines = dict(pipelines)
        self._supervisor = supervisor
        self._hub = hub
        self._store = run_store or InMemoryRunStore()
        self._stage_gap_s = stage_gap_s
        self._base_env = dict(base_env or {})
        self._logger_factory = logger_factory
        self._lock = asyncio.Lock()
        self._live: dict[str, _LiveRun] = {}
        self._active_by_pipeline: dict[str, str] = {}
        self._bg: set[asyncio.Task] = set()

    def _stage_logger(self, record: RunRecord, stage_name: str) -> logging.Logger:
        if self._logger_factory is None:
            return logger
        return self._logger_factory.for_stage_ctx(
            run_id=record.run_id, stage=stage_name, pipeline_id=record.pipeline_id
        )

    # -------- pipeline helpers --------

    @property
    def pipelines(self) -> dict[str, PipelineSettings]:
        return dict(self._pipelines)

    def _resolve_pipeline(self, pipeline_id: str) -> PipelineSettings:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise UnknownPipeline(pipeline_id)
        return pipeline

    @staticmethod
    def _select_stages(pipeline_id: str, pipeline: PipelineSettings, stages: Sequence[str] | None) -> list[str]:
        names = pipeline.stage_names()
        if stages is None:
            selected = names
        else:
            unknown = [s for s in stages if s not in names]
            if unknown:
                raise UnknownStage(pipeline_id, unknown)
            wanted = set(stages)
            # keep the pipeline's declared order
            selected = [n for n in names if n in wanted]
        if not selected:
            raise ValueError(f"Pipeline '{pipeline_id}' has no stages to run")
        return selected

    def _stage_env(self, record: RunRecord, pipeline: PipelineSettings, spec: StageSpec) -> dict[str, str]:
        env = {**spec.env, **pipeline.default_params, **record.params}
        env.update(self._base_env)
        env.update(
            {
                "COPYCHU_RUN_ID": record.run_id,
                "COPYCHU_PIPELINE_ID": record.pipeline_id,
                "COPYCHU_STAGE": spec.name,
            }
        )
        return env

    @staticmethod
    def _stage_cwd(pipeline: PipelineSettings, spec: StageSpec) -> str:
        base = Path(pipeline.scripts_dir)
        if spec.cwd is None:
            return str(base)
        p = Path(spec.cwd)
        return str(p if p.is_absolute() else base / p)

    # -------- event helpers --------

    def _publish(self, record: RunRecord, status: RunStatus, **kwargs) -> None:
        self._hub.publish(
            StateTransition(
                run_id=record.run_id,
                seq=self._supervisor.next_seq(record.run_id),
                status=status,
                ts=_utcnow(),
                **kwargs,
            )
        )

    def _transition(self, record: RunRecord, status: RunStatus, **kwargs) -> None:
        previous = record.status
        if previous.is_terminal:
            raise RuntimeError(f"Run {record.run_id} is already {previous.value}")
        record.status = status
        logger.info("Run %s: %s -> %s", record.run_id, previous.value, status.value)
        self._publish(record, status, previous=previous, **kwargs)

    # -------- trigger / cancel --------

    async def trigger(
        self,
        pipeline_id: str,
        *,
        stages: Sequence[str] | None = None,
        params: Mapping[str, str] | None = None,
        stage_args: Mapping[str, Sequence[str]] | None = None,
        origin: str = "manual",
        run_id: str | None = None,
    ) -> RunRecord:
        """
        Start a new run of `pipeline_id` in the background.

        Raises AlreadyRunning when another run of the same pipeline is Queued
        or Running, UnknownPipeline / UnknownStage for bad input.
        A caller-chosen `run_id` must not name any run still known here
        still known to this manager or the hub; DuplicateRunId otherwise.
        """
        pipeline = self._resolve_pipeline(pipeline_id)
        selected = self._select_stages(pipeline_id, pipeline, stages)

        async with self._lock:
            active_id = self._active_by_pipeline.get(pipeline_id)
            if active_id is not None:
                raise AlreadyRunning(pipeline_id, active_id)
            if run_id is not None and await self._run_id_taken(run_id):
                raise DuplicateRunId(run_id)

            record = RunRecord(
                run_id=run_id or f"run-{uuid4().hex[:8]}",
                pipeline_id=pipeline_id,
                status=RunStatus.queued,
                started_at=_utcnow(),
                stages=selected,
                params={str(k): str(v) for k, v in (params or {}).items()},
                origin=origin,
            )
            live = _LiveRun(
                record=record,
                pipeline=pipeline,
                stage_args={k: list(v) for k, v in (stage_args or {}).items()},
            )
            self._live[record.run_id] = live
            self._active_by_pipeline[pipeline_id] = record.run_id
            await self._store.create(record)

        logger.info("Run %s queued for pipeline %s (%s): %s", record.run_id, pipeline_id, origin, selected)
        self._publish(record, RunStatus.queued, message=f"queued ({origin})")
        live.task = asyncio.create_task(self._drive(live), name=f"run:{record.run_id}")
        return copy.deepcopy(record)

    async def _run_id_taken(self, run_id: str) -> bool:
        if run_id in self._live or self._hub.has_run(run_id):
            return True
        return await self._store.get(run_id) is not None

    async def cancel(self, run_id: str) -> RunRecord:
        """
        Request cancellation of a Queued/Running run.

        Raises RunNotFound for unknown runs and NotCancellable for terminal
        runs or when cancellation was already requested.
        """
        live = self._live.get(run_id)
        if live is None:
            rec = await self._store.get(run_id)
            if rec is None:
                raise RunNotFound(run_id)
            raise NotCancellable(run_id, rec.status.value)

        record = live.record
        if record.cancel_requested:
            raise NotCancellable(run_id, record.status.value, "cancellation already requested")

        record.cancel_requested = True
        live.cancel_event.set()
        await self._store.save(record)
        self._publish(record, record.status, message="cancellation requested")
        logger.info("Cancellation requested for run %s", run_id)

        if live.handle is not None:
            t = asyncio.create_task(self._supervisor.cancel(live.handle))
            self._bg.add(t)
            t.add_done_callback(self._bg.discard)
        return copy.deepcopy(record)

    # -------- execution --------

    async def _drive(self, live: _LiveRun) -> None:
        record = live.record
        pipeline = live.pipeline
        try:
            for idx, stage_name in enumerate(record.stages):
                if live.cancel_event.is_set():
                    break
                if idx > 0 and self._stage_gap_s > 0:
                    try:
                        await asyncio.wait_for(live.cancel_event.wait(), timeout=self._stage_gap_s)
                        break
                    except asyncio.TimeoutError:
                        pass

                log = self._stage_logger(record, stage_name)
                spec = pipeline.get_stage(stage_name)
                assert spec is not None
                record.current_stage_index = idx
                pending = StageResult(stage_name=stage_name, started_at=_utcnow())
                record.stage_results.append(pending)

                try:
                    handle = await self._supervisor.start(
                        record.run_id,
                        stage_name,
                        spec.command,
                        args=live.stage_args.get(stage_name, ()),
                        env=self._stage_env(record, pipeline, spec),
                        cwd=self._stage_cwd(pipeline, spec),
                    )
                except StageLaunchError as exc:
                    pending.ended_at = _utcnow()
                    pending.outcome = StageOutcome.failure
                    pending.reason = FailureReason.spawn_failed
                    pending.error = str(exc)
                    log.error("Run %s: %s", record.run_id, exc)
                    await self._finish(live, RunStatus.failed, reason=FailureReason.spawn_failed, error=str(exc))
                    return

                live.handle = handle
                pending.started_at = handle.started_at
                log.info("Run %s: stage %s running", record.run_id, stage_name)
                if record.status == RunStatus.queued:
                    self._transition(record, RunStatus.running)
                self._publish(
                    record,
                    RunStatus.running,
                    stage_name=stage_name,
                    stage_index=idx,
                    stage_outcome=StageOutcome.running,
                )
                await self._store.save(record)

                if live.cancel_event.is_set():
                    await self._supervisor.cancel(handle)
                result = await self._supervisor.wait(handle)
                live.handle = None
                record.stage_results[-1] = result
                log.info("Run %s: stage %s finished: %s", record.run_id, stage_name, result.outcome.value)

                self._publish(
                    record,
                    RunStatus.running,
                    stage_name=stage_name,
                    stage_index=idx,
                    stage_outcome=result.outcome,
                    exit_code=result.exit_code,
                    reason=result.reason,
                )

                if result.outcome == StageOutcome.cancelled:
                    await self._finish(live, RunStatus.cancelled, reason=FailureReason.cancelled)
                    return
                if result.outcome == StageOutcome.failure:
                    what = "stalled" if result.reason == FailureReason.stalled else f"exit code {result.exit_code}"
                    await self._finish(
                        live,
                        RunStatus.failed,
                        reason=result.reason,
                        error=f"Stage {stage_name} failed ({what})",
                    )
                    return
                await self._store.save(record)
            else:
                await self._finish(live, RunStatus.succeeded)
                return

            await self._finish(live, RunStatus.cancelled, reason=FailureReason.cancelled)

        except asyncio.CancelledError:
            # server shutdown: take the stage process down with us
            if live.handle is not None:
                await asyncio.shield(self._supervisor.cancel(live.handle))
            if record.stage_results and record.stage_results[-1].outcome == StageOutcome.running:
                record.stage_results[-1].outcome = StageOutcome.cancelled
                record.stage_results[-1].ended_at = _utcnow()
            if not record.status.is_terminal:
                await self._finish(live, RunStatus.cancelled, reason=FailureReason.cancelled, error="shutdown")
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s crashed in the orchestrator: %s", record.run_id, exc)
            if not record.status.is_terminal:
                await self._finish(live, RunStatus.failed, error=str(exc))

    async def _finish(
        self,
        live: _LiveRun,
        status: RunStatus,
        *,
        reason: FailureReason | None = None,
        error: str | None = None,
    ) -> None:
        record = live.record
        record.ended_at = _utcnow()
        record.reason = reason
        record.error = error
        previous = record.status
        record.status = status
        await self._store.save(record)

        self._live.pop(record.run_id, None)
        if self._active_by_pipeline.get(record.pipeline_id) == record.run_id:
            self._active_by_pipeline.pop(record.pipeline_id, None)

        logger.info("Run %s: %s -> %s", record.run_id, previous.value, status.value)
        self._publish(
            record,
            status,
            previous=previous,
            stage_name=record.current_stage,
            stage_index=record.current_stage_index,
            reason=reason,
            message=error,
        )
        self._supervisor.release_run(record.run_id)
        live.done_event.set()

    # -------- queries --------

    async def wait(self, run_id: str, timeout: float | None = None) -> RunRecord:
        """Block until the run is terminal and return its final record."""
        live = self._live.get(run_id)
        if live is not None:
            await asyncio.wait_for(live.done_event.wait(), timeout=timeout)
        rec = await self._store.get(run_id)
        if rec is None:
            raise RunNotFound(run_id)
        return rec

    async def get_record(self, run_id: str) -> RunRecord | None:
        return await self._store.get(run_id)

    async def list_records(
        self,
        *,
        pipeline_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        return await self._store.list(pipeline_id=pipeline_id, status=status, limit=limit)

    def active_run_id(self, pipeline_id: str) -> str | None:
        return self._active_by_pipeline.get(pipeline_id)

    async def shutdown(self) -> None:
        lives = list(self._live.values())
        for live in lives:
            live.cancel_event.set()
            if live.task is not None and not live.task.done():
                live.task.cancel()
        await asyncio.gather(*(lv.task for lv in lives if lv.task is not None), return_exceptions=True)
