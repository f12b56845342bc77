from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any
from zoneinfo import ZoneInfo

from copychu.contracts.errors.errors import (
    AlreadyRunning,
    OrchestratorError,
    ScheduleNotFound,
    UnknownPipeline,
)
from copychu.core.runtime.run_manager import RunManager
from copychu.core.runtime.run_types import RunRecord
from copychu.services.schedule.cron import CronExpression

logger = logging.getLogger("copychu.scheduler")


@dataclass
class ScheduleEntry:
    pipeline_id: str
    cron: CronExpression
    name: str = ""
    enabled: bool = True
    stages: list[str] | None = None
    params: dict[str, str] = field(default_factory=dict)
    next_fire: datetime | None = None
    last_fired: datetime | None = None
    last_run_id: str | None = None
    last_outcome: str | None = None  # "triggered" | "skipped" | "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "cron": self.cron.expr,
            "name": self.name,
            "enabled": self.enabled,
            "stages": self.stages,
            "params": dict(self.params),
            "next_fire": self.next_fire.isoformat() if self.next_fire else None,
            "last_fired": self.last_fired.isoformat() if self.last_fired else None,
            "last_run_id": self.last_run_id,
            "last_outcome": self.last_outcome,
        }


class Scheduler:
    """
    Wall-clock cron triggers for pipelines.

    One schedule per pipeline; registering again replaces it. A firing while
    the pipeline is still running is skipped (logged), never queued, and
    firings missed while the process was down are not replayed.
    """

    def __init__(
        self,
        run_manager: RunManager,
        *,
        timezone_name: str = "UTC",
        poll_s: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._rm = run_manager
        self._tz = ZoneInfo(timezone_name)
        self._poll_s = poll_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[str, ScheduleEntry] = {}
        self._changed: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _wake(self) -> None:
        if self._changed is not None:
            self._changed.set()

    # -------- registration --------

    def schedule(
        self,
        cron: str,
        pipeline_id: str,
        *,
        stages: Sequence[str] | None = None,
        params: Mapping[str, str] | None = None,
        name: str = "",
        enabled: bool = True,
    ) -> ScheduleEntry:
        """
        Register (or replace) the schedule of `pipeline_id`.

        Raises ValueError for an invalid cron expression and UnknownPipeline
        for an undefined pipeline.
        """
        if pipeline_id not in self._rm.pipelines:
            raise UnknownPipeline(pipeline_id)
        expr = CronExpression.parse(cron)
        entry = ScheduleEntry(
            pipeline_id=pipeline_id,
            cron=expr,
            name=name,
            enabled=enabled,
            stages=list(stages) if stages is not None else None,
            params=dict(params or {}),
            next_fire=expr.next_after(self._now()),
        )
        replaced = self._entries.get(pipeline_id)
        self._entries[pipeline_id] = entry
        if replaced is not None:
            logger.info("Schedule for %s replaced: '%s' -> '%s'", pipeline_id, replaced.cron, expr)
        else:
            logger.info("Schedule for %s registered: '%s'", pipeline_id, expr)
        logger.info("Next %s run scheduled for %s", pipeline_id, entry.next_fire.isoformat())
        self._wake()
        return copy.deepcopy(entry)

    def unschedule(self, pipeline_id: str) -> None:
        if self._entries.pop(pipeline_id, None) is None:
            raise ScheduleNotFound(pipeline_id)
        logger.info("Schedule for %s removed", pipeline_id)
        self._wake()

    def set_enabled(self, pipeline_id: str, enabled: bool) -> ScheduleEntry:
        entry = self._entries.get(pipeline_id)
        if entry is None:
            raise ScheduleNotFound(pipeline_id)
        entry.enabled = enabled
        if enabled:
            entry.next_fire = entry.cron.next_after(self._now())
        logger.info("Schedule for %s %s", pipeline_id, "enabled" if enabled else "disabled")
        self._wake()
        return copy.deepcopy(entry)

    def get(self, pipeline_id: str) -> ScheduleEntry | None:
        entry = self._entries.get(pipeline_id)
        return copy.deepcopy(entry) if entry else None

    def list(self) -> list[ScheduleEntry]:
        return [copy.deepcopy(e) for e in self._entries.values()]

    # -------- firing --------

    async def fire(self, entry: ScheduleEntry) -> RunRecord | None:
        try:
            record = await self._rm.trigger(
                entry.pipeline_id,
                stages=entry.stages,
                params=entry.params,
                origin="schedule",
            )
        except AlreadyRunning as exc:
            logger.info("Scheduled run of %s skipped: run %s still active", entry.pipeline_id, exc.run_id)
            entry.last_outcome = "skipped"
            return None
        except (OrchestratorError, ValueError) as exc:
            logger.error("Scheduled run of %s could not be triggered: %s", entry.pipeline_id, exc)
            entry.last_outcome = "error"
            return None
        entry.last_run_id = record.run_id
        entry.last_outcome = "triggered"
        logger.info("Scheduled run %s of %s triggered", record.run_id, entry.pipeline_id)
        return record

    async def tick(self, now: datetime | None = None) -> list[RunRecord]:
        """Fire every enabled schedule that is due at `now`."""
        now = (now or self._clock()).astimezone(self._tz)
        fired: list[RunRecord] = []
        for entry in list(self._entries.values()):
            if not entry.enabled or entry.next_fire is None or entry.next_fire > now:
                continue
            entry.last_fired = now
            # computed from now, so a long sleep fires once instead of catching up
            entry.next_fire = entry.cron.next_after(now)
            record = await self.fire(entry)
            if record is not None:
                fired.append(record)
        return fired

    def _next_due(self) -> datetime | None:
        due = [e.next_fire for e in self._entries.values() if e.enabled and e.next_fire is not None]
        return min(due) if due else None

    async def _run(self) -> None:
        assert self._changed is not None
        while True:
            self._changed.clear()
            now = self._now()
            target = self._next_due()
            delay = self._poll_s if target is None else (target - now).total_seconds()
            delay = min(max(delay, 0.0), self._poll_s)
            if delay > 0:
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._changed.wait(), timeout=delay)
                    continue
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed")

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._changed = asyncio.Event()
        now = self._now()
        # no backlog: everything counts from startup
        for entry in self._entries.values():
            entry.next_fire = entry.cron.next_after(now)
        self._task = asyncio.create_task(self._run(), name="scheduler")
        logger.info("Scheduler started with %d schedule(s)", len(self._entries))

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._changed = None
