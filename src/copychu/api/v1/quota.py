# /quota

import asyncio

from fastapi import APIRouter, HTTPException

from copychu.contracts.errors.errors import QuotaPersistenceError
from copychu.core.runtime.runtime_services import current_services

from .deps import to_http_error
from .schemas import QuotaCallRequest, QuotaCallResponse, QuotaSnapshot

router = APIRouter(tags=["quota"])


def _guard():
    guard = getattr(current_services(), "quota", None)
    if guard is None:
        raise HTTPException(status_code=503, detail="Quota guard not configured")
    return guard


def quota_snapshot(guard) -> QuotaSnapshot:
    snap = guard.snapshot()
    return QuotaSnapshot(**snap, canProceed=snap["remaining"] > 0)


@router.get("/quota", response_model=QuotaSnapshot)
async def get_quota() -> QuotaSnapshot:
    """Today's call count, remaining budget and per-label breakdown."""
    guard = _guard()
    # pick up calls recorded by stage processes
    await asyncio.to_thread(guard.refresh)
    return quota_snapshot(guard)


@router.post("/quota/calls", response_model=QuotaCallResponse)
async def record_quota_call(body: QuotaCallRequest) -> QuotaCallResponse:
    """Count one call against today's budget (for workers that cannot reach the record)."""
    container = current_services()
    guard = _guard()
    try:
        result = await asyncio.to_thread(guard.record_call, body.label)
    except QuotaPersistenceError as exc:
        raise to_http_error(exc) from exc
    finally:
        monitor = getattr(container, "quota_monitor", None)
        if monitor is not None:
            monitor.publish_state()
    return QuotaCallResponse(**result.to_dict())
