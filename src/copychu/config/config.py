from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .pipeline import PipelineSettings, default_pipelines


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = False
    log_dir: str = "logs"  # relative to AppSettings.workspace
    enable_queue: bool = True


class QuotaSettings(BaseModel):
    """Daily call budget for the rate-limited image/content API."""

    path: str = "quota/gemini-api-stats.json"  # relative to AppSettings.workspace
    daily_limit: int = 1500
    warning_thresholds: list[int] = Field(default_factory=lambda: [1000, 1500])
    low_remaining_warning: int = 100
    history_size: int = 100
    timezone: str = "UTC"
    lock_timeout_s: float = 10.0
    watch_interval_s: float = 5.0


class SupervisorSettings(BaseModel):
    grace_period_s: float = 5.0
    idle_timeout_s: float = 900.0  # 0 disables stall detection
    line_limit_bytes: int = 1024 * 1024
    kill_process_group: bool = True


class HubSettings(BaseModel):
    ring_size: int = 1000  # per run
    queue_size: int = 256  # per observer
    max_buffered_runs: int = 20


class RunSettings(BaseModel):
    history_size: int = 100
    stage_gap_s: float = 2.0


class SchedulerSettings(BaseModel):
    enabled: bool = True
    timezone: str = "UTC"


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class AppSettings(BaseSettings):
    """
    Root settings object.

    Every field can be overridden from the environment, e.g.
    COPYCHU_QUOTA__DAILY_LIMIT=2000 or COPYCHU_SUPERVISOR__IDLE_TIMEOUT_S=0.
    """

    model_config = SettingsConfigDict(
        env_prefix="COPYCHU_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    workspace: str = "./copychu_data"
    env: Literal["dev", "prod", "test"] = "dev"

    logging: LoggingSettings = LoggingSettings()
    quota: QuotaSettings = QuotaSettings()
    supervisor: SupervisorSettings = SupervisorSettings()
    hub: HubSettings = HubSettings()
    runs: RunSettings = RunSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    server: ServerSettings = ServerSettings()
    pipelines: dict[str, PipelineSettings] = Field(default_factory=default_pipelines)

    def resolve(self, rel: str) -> Path:
        """Resolve a settings path against the workspace (absolute paths pass through)."""
        p = Path(rel)
        if p.is_absolute():
            return p
        return Path(self.workspace).resolve() / p

    def quota_path(self) -> Path:
        return self.resolve(self.quota.path)
