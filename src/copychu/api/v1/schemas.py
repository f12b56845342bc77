# Schemas for request and response bodies used in the API.

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from copychu.core.runtime.run_types import (
    FailureReason,
    RunRecord,
    RunStatus,
    StageOutcome,
    StageResult,
)


# --------- Pipelines ---------


class StageInfo(BaseModel):
    name: str
    title: str = ""
    command: list[str] = []


class PipelineInfo(BaseModel):
    pipeline_id: str
    title: str = ""
    stages: list[StageInfo] = []
    default_params: dict[str, str] = {}
    active_run_id: str | None = None
    schedule: ScheduleInfo | None = None


class PipelineListResponse(BaseModel):
    pipelines: list[PipelineInfo]


# --------- Runs ---------


class RunTriggerRequest(BaseModel):
    run_id: str | None = None
    stages: list[str] | None = None  # ordered subset; None => all stages
    params: dict[str, str] = {}
    stage_args: dict[str, list[str]] = {}


class StageResultInfo(BaseModel):
    stage_name: str
    started_at: datetime
    ended_at: datetime | None = None
    exit_code: int | None = None
    outcome: StageOutcome
    reason: FailureReason | None = None
    error: str | None = None
    progress: dict[str, int] | None = None

    @classmethod
    def from_result(cls, r: StageResult) -> StageResultInfo:
        return cls(**r.__dict__)


class RunSummary(BaseModel):
    run_id: str
    pipeline_id: str
    status: RunStatus
    origin: str = "manual"
    started_at: datetime
    ended_at: datetime | None = None
    stages: list[str] = []
    current_stage_index: int | None = None
    current_stage: str | None = None
    cancel_requested: bool = False
    reason: FailureReason | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, rec: RunRecord) -> RunSummary:
        return cls(
            run_id=rec.run_id,
            pipeline_id=rec.pipeline_id,
            status=rec.status,
            origin=rec.origin,
            started_at=rec.started_at,
            ended_at=rec.ended_at,
            stages=list(rec.stages),
            current_stage_index=rec.current_stage_index,
            current_stage=rec.current_stage,
            cancel_requested=rec.cancel_requested,
            reason=rec.reason,
            error=rec.error,
        )


class RunDetail(RunSummary):
    params: dict[str, str] = {}
    stage_results: list[StageResultInfo] = []

    @classmethod
    def from_record(cls, rec: RunRecord) -> RunDetail:
        base = RunSummary.from_record(rec).model_dump()
        return cls(
            **base,
            params=dict(rec.params),
            stage_results=[StageResultInfo.from_result(r) for r in rec.stage_results],
        )


class RunListResponse(BaseModel):
    runs: list[RunSummary]


class RunLogsResponse(BaseModel):
    run_id: str
    events: list[dict[str, Any]]


# --------- Quota ---------


class QuotaSnapshot(BaseModel):
    date: str
    callCount: int
    limit: int
    remaining: int
    perFunctionCounts: dict[str, int] = {}
    sessionCount: int = 0
    sessionByFunction: dict[str, int] = {}
    crossedThresholds: list[int] = []
    unsavedCalls: int = 0
    canProceed: bool = True


class QuotaCallRequest(BaseModel):
    label: str = Field(min_length=1, max_length=200)


class QuotaCallResponse(BaseModel):
    label: str
    callCount: int
    remaining: int
    sessionCount: int
    persisted: bool = True
    notices: list[dict[str, Any]] = []


# --------- Schedules ---------


class ScheduleRequest(BaseModel):
    cron: str
    name: str = ""
    enabled: bool = True
    stages: list[str] | None = None
    params: dict[str, str] = {}


class ScheduleToggle(BaseModel):
    enabled: bool


class ScheduleInfo(BaseModel):
    pipeline_id: str
    cron: str
    name: str = ""
    enabled: bool = True
    stages: list[str] | None = None
    params: dict[str, str] = {}
    next_fire: datetime | None = None
    last_fired: datetime | None = None
    last_run_id: str | None = None
    last_outcome: str | None = None


class ScheduleListResponse(BaseModel):
    schedules: list[ScheduleInfo]


# --------- Stats ---------


class StatsResponse(BaseModel):
    runs_by_status: dict[str, int]
    active_runs: dict[str, str]  # pipeline_id -> run_id
    observers: int
    quota: QuotaSnapshot


PipelineInfo.model_rebuild()
