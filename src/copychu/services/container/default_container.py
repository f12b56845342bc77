from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from copychu.config.config import AppSettings
from copychu.config.loader import load_settings
from copychu.config.pipeline import PipelineSettings
from copychu.core.runtime.run_manager import RunManager
from copychu.services.channel.event_hub import EventHub
from copychu.services.execution.stage_supervisor import StageSupervisor
from copychu.services.logger.std import LoggingConfig, StdLoggerService
from copychu.services.quota.monitor import QuotaMonitor
from copychu.services.quota.quota_guard import QuotaGuard
from copychu.services.schedule.scheduler import Scheduler
from copychu.storage.quota.fs_quota_store import FSQuotaStore
from copychu.storage.runs.inmem_store import InMemoryRunStore

logger = logging.getLogger("copychu.container")


@dataclass
class DefaultContainer:
    root: str
    settings: AppSettings
    hub: EventHub
    quota_store: FSQuotaStore
    quota: QuotaGuard
    quota_monitor: QuotaMonitor
    supervisor: StageSupervisor
    run_store: InMemoryRunStore
    run_manager: RunManager
    scheduler: Scheduler
    logger_factory: StdLoggerService | None = None


def build_quota_guard(settings: AppSettings) -> QuotaGuard:
    q = settings.quota
    store = FSQuotaStore(settings.quota_path(), lock_timeout_s=q.lock_timeout_s)
    return QuotaGuard(
        store,
        limit=q.daily_limit,
        thresholds=q.warning_thresholds,
        low_remaining_warning=q.low_remaining_warning,
        history_size=q.history_size,
        tz=q.timezone,
    )


def _resolve_pipelines(settings: AppSettings) -> dict[str, PipelineSettings]:
    return {
        pid: p.model_copy(update={"scripts_dir": str(settings.resolve(p.scripts_dir))})
        for pid, p in settings.pipelines.items()
    }


def build_default_container(
    *,
    root: str | None = None,
    cfg: AppSettings | None = None,
    configure_logging: bool = True,
) -> DefaultContainer:
    settings = cfg or load_settings(root)
    if root is not None and settings.workspace != root:
        settings = settings.model_copy(update={"workspace": root})
    workspace = Path(settings.workspace).resolve()
    workspace.mkdir(parents=True, exist_ok=True)

    logger_factory = None
    if configure_logging:
        logger_factory = StdLoggerService.build(LoggingConfig.from_cfg(settings))

    hub = EventHub(
        ring_size=settings.hub.ring_size,
        queue_size=settings.hub.queue_size,
        max_buffered_runs=settings.hub.max_buffered_runs,
    )

    quota = build_quota_guard(settings)
    quota_monitor = QuotaMonitor(quota, hub, interval_s=settings.quota.watch_interval_s)

    sup = settings.supervisor
    supervisor = StageSupervisor(
        hub,
        grace_period_s=sup.grace_period_s,
        idle_timeout_s=sup.idle_timeout_s,
        line_limit_bytes=sup.line_limit_bytes,
        kill_process_group=sup.kill_process_group,
    )

    run_store = InMemoryRunStore(max_records=settings.runs.history_size)
    pipelines = _resolve_pipelines(settings)
    run_manager = RunManager(
        pipelines=pipelines,
        supervisor=supervisor,
        hub=hub,
        run_store=run_store,
        stage_gap_s=settings.runs.stage_gap_s,
        # stage processes reach the same workspace and quota record
        base_env={
            "COPYCHU_WORKSPACE": str(workspace),
            "COPYCHU_QUOTA__PATH": str(settings.quota_path()),
        },
        logger_factory=logger_factory,
    )

    scheduler = Scheduler(run_manager, timezone_name=settings.scheduler.timezone)
    for pid, pipeline in pipelines.items():
        if len(pipeline.schedules) > 1:
            logger.warning("Pipeline %s declares %d schedules; only the last one is kept", pid, len(pipeline.schedules))
        for spec in pipeline.schedules:
            scheduler.schedule(
                spec.cron,
                pid,
                stages=spec.stages,
                params=spec.params,
                name=spec.name,
                enabled=spec.enabled,
            )

    return DefaultContainer(
        root=str(workspace),
        settings=settings,
        hub=hub,
        quota_store=quota.store,
        quota=quota,
        quota_monitor=quota_monitor,
        supervisor=supervisor,
        run_store=run_store,
        run_manager=run_manager,
        scheduler=scheduler,
        logger_factory=logger_factory,
    )
