from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
import logging, queue
import logging.handlers

from typing import Optional, Mapping

from copychu.config.config import AppSettings

from .base import LoggerService, LogContext
from .formatters import SafeFormatter, JsonFormatter, ColorFormatter


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class LoggingConfig:
    """
    Where orchestrator logs go and how they look.

    The console always gets colored text. The rotating `copychu.log` under
    `log_dir` gets either text (`file_pattern`) or one JSON object per line.
    With `enable_queue` the file is written from a QueueListener thread so
    stage output relaying never waits on disk. `per_namespace_levels` tunes
    single components, e.g. {"copychu.supervisor": "DEBUG"}.
    """
    root_ns: str = "copychu"
    level: str = "INFO"
    log_dir: str = "./logs"
    use_json: bool = False
    enable_queue: bool = False
    per_namespace_levels: Mapping[str, str] = field(default_factory=dict)
    console_pattern: str = "%(asctime)s %(levelname)s \t%(name)s    run=%(run_id)s    stage=%(stage)s - %(message)s"
    file_pattern: str = "%(asctime)s %(levelname)s %(name)s %(run_id)s %(stage)s %(pipeline_id)s %(message)s"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @staticmethod
    def from_env() -> "LoggingConfig":
        return LoggingConfig(
            root_ns=os.getenv("COPYCHU_LOG_ROOT", "copychu"),
            level=os.getenv("COPYCHU_LOGGING__LEVEL", "INFO"),
            log_dir=os.getenv("COPYCHU_LOG_DIR", "./logs"),
            use_json=os.getenv("COPYCHU_LOGGING__JSON_LOGS", "0").lower() in ("1", "true"),
            enable_queue=os.getenv("COPYCHU_LOGGING__ENABLE_QUEUE", "0").lower() in ("1", "true"),
        )

    @staticmethod
    def from_cfg(cfg: AppSettings, log_dir: Optional[str] = None) -> "LoggingConfig":
        return LoggingConfig(
            root_ns="copychu",
            level=cfg.logging.level,
            log_dir=log_dir or str(cfg.resolve(cfg.logging.log_dir)),
            use_json=cfg.logging.json_logs,
            enable_queue=cfg.logging.enable_queue,
        )


class _ContextAdapter(logging.LoggerAdapter):
    """Merges run/stage/pipeline ids into every record's `extra`."""
    def process(self, msg, kwargs):
        extra = kwargs.get("extra") or {}
        merged = {**self.extra, **extra}
        kwargs["extra"] = merged
        return msg, kwargs


class StdLoggerService(LoggerService):
    """
    The `copychu` logger tree plus helpers that stamp run and stage ids.

    Built once per server by `build()`; `close()` drains the file queue on
    shutdown.
    """
    def __init__(
        self,
        base: logging.Logger,
        *,
        cfg: LoggingConfig,
        listener: Optional[logging.handlers.QueueListener] = None,
    ):
        self._base = base
        self._cfg = cfg
        self._listener = listener

    def base(self) -> logging.Logger:
        return self._base

    def for_namespace(self, ns: str) -> logging.Logger:
        return self._base.getChild(ns)

    def with_context(self, logger: logging.Logger, ctx: LogContext) -> logging.Logger:
        return _ContextAdapter(logger, ctx.as_extra())

    def for_run_ctx(self, *, run_id: str, pipeline_id: Optional[str] = None) -> logging.Logger:
        return self.with_context(self.for_namespace("run"), LogContext(run_id=run_id, pipeline_id=pipeline_id))

    def for_stage_ctx(self, *, run_id: str, stage: str, pipeline_id: Optional[str] = None) -> logging.Logger:
        base = self.for_namespace(f"stage.{stage}")
        return self.with_context(base, LogContext(run_id=run_id, stage=stage, pipeline_id=pipeline_id))

    def close(self) -> None:
        """Flush and stop the background file writer, if any."""
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

    @staticmethod
    def _file_handler(cfg: LoggingConfig, file_path: Path) -> logging.Handler:
        fh = logging.handlers.RotatingFileHandler(
            file_path, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding="utf-8"
        )
        if cfg.use_json:
            fh.setFormatter(JsonFormatter())
        else:
            fh.setFormatter(SafeFormatter(cfg.file_pattern))
        fh.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))
        return fh

    @staticmethod
    def build(cfg: Optional[LoggingConfig] = None) -> "StdLoggerService":
        cfg = cfg or LoggingConfig.from_env()

        root = logging.getLogger(cfg.root_ns)
        # a second build replaces the handlers of the first
        for h in list(root.handlers):
            root.removeHandler(h)
        root.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))
        root.propagate = False

        for ns, lvl in cfg.per_namespace_levels.items():
            logging.getLogger(ns).setLevel(getattr(logging, str(lvl).upper(), logging.INFO))

        console = logging.StreamHandler()
        console.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))
        console.setFormatter(ColorFormatter(cfg.console_pattern))
        root.addHandler(console)

        _ensure_dir(Path(cfg.log_dir))
        file_path = Path(cfg.log_dir) / "copychu.log"
        fh = StdLoggerService._file_handler(cfg, file_path)

        listener = None
        if cfg.enable_queue:
            q: queue.Queue = queue.Queue(-1)
            root.addHandler(logging.handlers.QueueHandler(q))
            listener = logging.handlers.QueueListener(q, fh, respect_handler_level=True)
            listener.start()
        else:
            root.addHandler(fh)

        return StdLoggerService(root, cfg=cfg, listener=listener)
