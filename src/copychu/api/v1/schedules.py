# /schedules

from fastapi import APIRouter, HTTPException, Response

from copychu.contracts.errors.errors import OrchestratorError
from copychu.core.runtime.runtime_services import current_services

from .deps import to_http_error
from .schemas import ScheduleInfo, ScheduleListResponse, ScheduleRequest, ScheduleToggle

router = APIRouter(tags=["schedules"])


def _scheduler():
    scheduler = getattr(current_services(), "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not configured")
    return scheduler


@router.get("/schedules", response_model=ScheduleListResponse)
async def list_schedules() -> ScheduleListResponse:
    return ScheduleListResponse(schedules=[ScheduleInfo(**e.to_dict()) for e in _scheduler().list()])


@router.get("/schedules/{pipeline_id}", response_model=ScheduleInfo)
async def get_schedule(pipeline_id: str) -> ScheduleInfo:
    entry = _scheduler().get(pipeline_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No schedule registered for pipeline '{pipeline_id}'")
    return ScheduleInfo(**entry.to_dict())


@router.put("/schedules/{pipeline_id}", response_model=ScheduleInfo)
async def put_schedule(pipeline_id: str, body: ScheduleRequest) -> ScheduleInfo:
    """Register the pipeline's schedule, replacing any previous one."""
    try:
        entry = _scheduler().schedule(
            body.cron,
            pipeline_id,
            stages=body.stages,
            params=body.params,
            name=body.name,
            enabled=body.enabled,
        )
    except (OrchestratorError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return ScheduleInfo(**entry.to_dict())


@router.patch("/schedules/{pipeline_id}", response_model=ScheduleInfo)
async def toggle_schedule(pipeline_id: str, body: ScheduleToggle) -> ScheduleInfo:
    try:
        entry = _scheduler().set_enabled(pipeline_id, body.enabled)
    except OrchestratorError as exc:
        raise to_http_error(exc) from exc
    return ScheduleInfo(**entry.to_dict())


@router.delete("/schedules/{pipeline_id}", status_code=204)
async def delete_schedule(pipeline_id: str) -> Response:
    try:
        _scheduler().unschedule(pipeline_id)
    except OrchestratorError as exc:
        raise to_http_error(exc) from exc
    return Response(status_code=204)
