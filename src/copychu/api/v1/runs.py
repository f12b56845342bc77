# /pipelines, /runs

from fastapi import APIRouter, HTTPException, Query

from copychu.contracts.errors.errors import OrchestratorError
from copychu.core.runtime.run_types import RunStatus
from copychu.core.runtime.runtime_services import current_services
from copychu.services.channel.event_hub import EventHub

from .deps import to_http_error
from .schemas import (
    PipelineInfo,
    PipelineListResponse,
    RunDetail,
    RunListResponse,
    RunLogsResponse,
    RunSummary,
    RunTriggerRequest,
    ScheduleInfo,
    StageInfo,
)

router = APIRouter(tags=["runs"])


def _run_manager():
    container = current_services()
    rm = getattr(container, "run_manager", None)
    if rm is None:
        raise HTTPException(status_code=503, detail="Run manager not configured")
    return rm


def _pipeline_info(container, pipeline_id: str, pipeline) -> PipelineInfo:
    rm = container.run_manager
    scheduler = getattr(container, "scheduler", None)
    entry = scheduler.get(pipeline_id) if scheduler is not None else None
    return PipelineInfo(
        pipeline_id=pipeline_id,
        title=pipeline.title,
        stages=[StageInfo(name=s.name, title=s.title, command=list(s.command)) for s in pipeline.stages],
        default_params=dict(pipeline.default_params),
        active_run_id=rm.active_run_id(pipeline_id),
        schedule=ScheduleInfo(**entry.to_dict()) if entry is not None else None,
    )


@router.get("/pipelines", response_model=PipelineListResponse)
async def list_pipelines() -> PipelineListResponse:
    container = current_services()
    rm = _run_manager()
    return PipelineListResponse(
        pipelines=[_pipeline_info(container, pid, p) for pid, p in rm.pipelines.items()]
    )


@router.get("/pipelines/{pipeline_id}", response_model=PipelineInfo)
async def get_pipeline(pipeline_id: str) -> PipelineInfo:
    container = current_services()
    pipeline = _run_manager().pipelines.get(pipeline_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' is not defined")
    return _pipeline_info(container, pipeline_id, pipeline)


@router.post("/pipelines/{pipeline_id}/runs", response_model=RunSummary, status_code=202)
async def trigger_run(pipeline_id: str, body: RunTriggerRequest | None = None) -> RunSummary:
    """
    Start a run of `pipeline_id`; optionally a subset of its stages and
    parameter overrides. 409 while another run of the pipeline is active.
    """
    rm = _run_manager()
    body = body or RunTriggerRequest()
    try:
        record = await rm.trigger(
            pipeline_id,
            stages=body.stages,
            params=body.params,
            stage_args=body.stage_args,
            run_id=body.run_id,
        )
    except (OrchestratorError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return RunSummary.from_record(record)


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    pipeline_id: str | None = Query(None),  # noqa: B008
    status: RunStatus | None = Query(None),  # noqa: B008
    limit: int = Query(20, ge=1, le=100),  # noqa: B008
) -> RunListResponse:
    """
    List recent runs, newest first, optionally filtered by pipeline or status.
    """
    records = await _run_manager().list_records(pipeline_id=pipeline_id, status=status, limit=limit)
    return RunListResponse(runs=[RunSummary.from_record(r) for r in records])


@router.get("/runs/{run_id}", response_model=RunDetail)
async def get_run(run_id: str) -> RunDetail:
    rec = await _run_manager().get_record(run_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunDetail.from_record(rec)


@router.post("/runs/{run_id}/cancel", response_model=RunSummary, status_code=202)
async def cancel_run(run_id: str) -> RunSummary:
    """
    Request run cancellation.

    The active stage gets SIGTERM (then SIGKILL after the grace period); the
    run turns Cancelled once the stage process is gone.
    """
    try:
        record = await _run_manager().cancel(run_id)
    except OrchestratorError as exc:
        raise to_http_error(exc) from exc
    return RunSummary.from_record(record)


@router.get("/runs/{run_id}/logs", response_model=RunLogsResponse)
async def get_run_logs(
    run_id: str,
    limit: int = Query(200, ge=1, le=5000),  # noqa: B008
    stage: str | None = Query(None),  # noqa: B008
    stream: str | None = Query(None, pattern="^(stdout|stderr)$"),  # noqa: B008
) -> RunLogsResponse:
    """Recent log lines from the hub's ring buffer for this run."""
    container = current_services()
    rec = await _run_manager().get_record(run_id)
    hub: EventHub = container.hub
    events = hub.recent(run_id, limit=limit, kind="log", stage_name=stage, stream=stream)
    if rec is None and not events:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunLogsResponse(run_id=run_id, events=[e.to_dict() for e in events])
