# /stats

from collections import Counter

from fastapi import APIRouter

from copychu.core.runtime.run_types import RunStatus
from copychu.core.runtime.runtime_services import current_services

from .quota import quota_snapshot
from .schemas import StatsResponse

router = APIRouter(tags=["stats"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats() -> StatsResponse:
    """Run counts per status over the retained history, plus the quota budget."""
    container = current_services()
    rm = container.run_manager
    records = await rm.list_records(limit=0)
    counts = Counter(r.status.value for r in records)
    active = {pid: rid for pid in rm.pipelines if (rid := rm.active_run_id(pid)) is not None}
    return StatsResponse(
        runs_by_status={s.value: counts.get(s.value, 0) for s in RunStatus},
        active_runs=active,
        observers=container.hub.observer_count,
        quota=quota_snapshot(container.quota),
    )
