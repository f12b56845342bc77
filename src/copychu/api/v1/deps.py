from __future__ import annotations

from fastapi import HTTPException

from copychu.contracts.errors.errors import (
    AlreadyRunning,
    ConflictError,
    DuplicateRunId,
    NotCancellable,
    OrchestratorError,
    QuotaPersistenceError,
    RunNotFound,
    ScheduleNotFound,
    UnknownPipeline,
    UnknownStage,
)


def to_http_error(exc: Exception) -> HTTPException:
    """Map orchestrator errors onto HTTP status codes."""
    if isinstance(exc, AlreadyRunning):
        return HTTPException(
            status_code=409,
            detail={"error": "already_running", "message": str(exc), "run_id": exc.run_id},
        )
    if isinstance(exc, NotCancellable):
        return HTTPException(
            status_code=409,
            detail={"error": "not_cancellable", "message": str(exc), "status": exc.status},
        )
    if isinstance(exc, DuplicateRunId):
        return HTTPException(
            status_code=409,
            detail={"error": "duplicate_run_id", "message": str(exc), "run_id": exc.run_id},
        )
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (RunNotFound, UnknownPipeline, ScheduleNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UnknownStage):
        return HTTPException(status_code=422, detail={"error": "unknown_stage", "stages": exc.stage_names})
    if isinstance(exc, QuotaPersistenceError):
        result = exc.result.to_dict() if exc.result is not None else None
        return HTTPException(status_code=503, detail={"error": "quota_not_persisted", "message": str(exc), "result": result})
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, OrchestratorError):
        return HTTPException(status_code=500, detail=str(exc))
    raise exc
