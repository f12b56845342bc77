from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# used to represent the status of a run, primarily used by RunManager and the runs endpoints


class RunStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.queued, RunStatus.running)


TERMINAL_STATUSES = frozenset({RunStatus.succeeded, RunStatus.failed, RunStatus.cancelled})


class StageOutcome(str, Enum):
    running = "running"
    success = "success"
    failure = "failure"
    cancelled = "cancelled"


class FailureReason(str, Enum):
    exit_code = "exit_code"  # process exited non-zero
    stalled = "stalled"  # no output for longer than the idle timeout
    spawn_failed = "spawn_failed"  # process could not be started
    cancelled = "cancelled"


@dataclass
class StageResult:
    stage_name: str
    started_at: datetime
    ended_at: datetime | None = None
    exit_code: int | None = None
    outcome: StageOutcome = StageOutcome.running
    reason: FailureReason | None = None
    error: str | None = None
    progress: dict[str, int] | None = None  # last "[n/m]" seen on stdout

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "exit_code": self.exit_code,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "progress": self.progress,
        }


@dataclass
class RunRecord:
    """
    Core-level representation of one pipeline run.

    This is independent from any Pydantic model used by the HTTP API.
    """

    run_id: str
    pipeline_id: str
    status: RunStatus
    started_at: datetime
    stages: list[str]
    ended_at: datetime | None = None
    current_stage_index: int | None = None
    stage_results: list[StageResult] = field(default_factory=list)
    params: dict[str, str] = field(default_factory=dict)
    origin: str = "manual"  # "manual" | "schedule"
    cancel_requested: bool = False
    reason: FailureReason | None = None
    error: str | None = None

    @property
    def current_stage(self) -> str | None:
        if self.current_stage_index is None:
            return None
        return self.stages[self.current_stage_index]


# --------- events fanned out through the EventHub ---------


@dataclass(frozen=True)
class LogEvent:
    run_id: str
    stage_name: str
    seq: int
    stream: str  # "stdout" | "stderr"
    text: str
    ts: datetime
    progress: dict[str, int] | None = None

    kind = "log"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "run_id": self.run_id,
            "stage_name": self.stage_name,
            "seq": self.seq,
            "stream": self.stream,
            "text": self.text,
            "ts": self.ts.isoformat(),
            "progress": self.progress,
        }


@dataclass(frozen=True)
class StateTransition:
    """
    Status change of a run, or a stage boundary inside a running run.

    `stage_name`/`stage_outcome` are set for stage-level transitions
    (stage started / stage finished).
    """

    run_id: str
    seq: int
    status: RunStatus
    ts: datetime
    previous: RunStatus | None = None
    stage_name: str | None = None
    stage_index: int | None = None
    stage_outcome: StageOutcome | None = None
    exit_code: int | None = None
    reason: FailureReason | None = None
    message: str | None = None

    kind = "transition"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "run_id": self.run_id,
            "seq": self.seq,
            "status": self.status.value,
            "previous": self.previous.value if self.previous else None,
            "stage_name": self.stage_name,
            "stage_index": self.stage_index,
            "stage_outcome": self.stage_outcome.value if self.stage_outcome else None,
            "exit_code": self.exit_code,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "ts": self.ts.isoformat(),
        }


@dataclass(frozen=True)
class QuotaEvent:
    """Quota budget update or threshold notification; not bound to any run."""

    type: str  # "quota.state" | "quota.threshold"
    payload: dict[str, Any]
    ts: datetime

    kind = "quota"
    run_id = None
    seq = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "type": self.type, "ts": self.ts.isoformat(), **self.payload}
