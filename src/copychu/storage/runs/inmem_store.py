from __future__ import annotations

import asyncio
import copy
import logging

from copychu.contracts.services.runs import RunStore
from copychu.core.runtime.run_types import RunRecord, RunStatus

logger = logging.getLogger("copychu.storage.runs")


class InMemoryRunStore(RunStore):
    """
    Bounded in-memory run history.

    Not persisted across process restarts. Once more than `max_records` runs
    are held, the oldest terminal runs are evicted first; active runs are
    never evicted.
    """

    def __init__(self, max_records: int = 100) -> None:
        self._records: dict[str, RunRecord] = {}
        self._max_records = max_records
        self._lock = asyncio.Lock()

    async def create(self, record: RunRecord) -> None:
        async with self._lock:
            self._records[record.run_id] = copy.deepcopy(record)
            self._evict()

    async def save(self, record: RunRecord) -> None:
        async with self._lock:
            self._records[record.run_id] = copy.deepcopy(record)

    async def get(self, run_id: str) -> RunRecord | None:
        async with self._lock:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            # return a deep copy to avoid external mutation of internal state
            return copy.deepcopy(rec)

    async def list(
        self,
        *,
        pipeline_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        async with self._lock:
            records: list[RunRecord] = list(self._records.values())
            if pipeline_id is not None:
                records = [r for r in records if r.pipeline_id == pipeline_id]
            if status is not None:
                records = [r for r in records if r.status == status]

            records = sorted(records, key=lambda r: r.started_at, reverse=True)
            if limit:
                records = records[:limit]
            return [copy.deepcopy(r) for r in records]

    def _evict(self) -> None:
        overflow = len(self._records) - self._max_records
        if overflow <= 0:
            return
        # dict preserves insertion order => oldest first
        for run_id in [rid for rid, r in self._records.items() if r.status.is_terminal]:
            if overflow <= 0:
                break
            del self._records[run_id]
            overflow -= 1
            logger.debug("Evicted run %s from history", run_id)
