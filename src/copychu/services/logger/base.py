from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Optional, Protocol


@dataclass(frozen=True)
class LogContext:
    run_id: Optional[str] = None
    stage: Optional[str] = None
    pipeline_id: Optional[str] = None

    def as_extra(self) -> Mapping[str, Any]:
        # Only include non-None fields; logging.Formatter will lookup keys by name.
        return {k: v for k, v in self.__dict__.items() if v is not None}


class LoggerService(Protocol):
    """Contract used by the rest of the system (run manager, scheduler, etc.)."""

    def base(self) -> logging.Logger: ...
    def for_namespace(self, ns: str) -> logging.Logger: ...
    def with_context(self, logger: logging.Logger, ctx: LogContext) -> logging.Logger: ...

    def for_run_ctx(self, *, run_id: str, pipeline_id: Optional[str] = None) -> logging.Logger: ...
    def for_stage_ctx(self, *, run_id: str, stage: str, pipeline_id: Optional[str] = None) -> logging.Logger: ...
