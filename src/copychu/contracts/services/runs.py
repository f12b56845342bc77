from __future__ import annotations

from typing import Protocol

from copychu.core.runtime.run_types import RunRecord, RunStatus


class RunStore(Protocol):
    """
    Abstract interface for storing run records.

    Implementations can be in-memory, file-based, or backed by a DB.
    Only RunManager writes to a RunStore; readers get copies.
    """

    async def create(self, record: RunRecord) -> None: ...
    async def save(self, record: RunRecord) -> None: ...
    async def get(self, run_id: str) -> RunRecord | None: ...
    async def list(
        self,
        *,
        pipeline_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]: ...
