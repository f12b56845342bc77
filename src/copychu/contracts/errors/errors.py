from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for errors raised by the orchestration engine."""


# --- Conflict ---


class ConflictError(OrchestratorError):
    pass


class AlreadyRunning(ConflictError):
    def __init__(self, pipeline_id: str, run_id: str):
        super().__init__(f"Pipeline '{pipeline_id}' already has an active run: {run_id}")
        self.pipeline_id = pipeline_id
        self.run_id = run_id


class DuplicateRunId(ConflictError):
    def __init__(self, run_id: str):
        super().__init__(f"Run id '{run_id}' is already in use")
        self.run_id = run_id


class NotCancellable(ConflictError):
    def __init__(self, run_id: str, status: str, reason: str = "run is already terminal"):
        super().__init__(f"Run {run_id} cannot be cancelled ({status}): {reason}")
        self.run_id = run_id
        self.status = status
        self.reason = reason


# --- NotFound / validation ---


class RunNotFound(OrchestratorError):
    def __init__(self, run_id: str):
        super().__init__(f"Run '{run_id}' not found")
        self.run_id = run_id


class UnknownPipeline(OrchestratorError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline '{pipeline_id}' is not defined")
        self.pipeline_id = pipeline_id


class UnknownStage(OrchestratorError, ValueError):
    def __init__(self, pipeline_id: str, stage_names: list[str]):
        names = ", ".join(stage_names)
        super().__init__(f"Unknown stage(s) for pipeline '{pipeline_id}': {names}")
        self.pipeline_id = pipeline_id
        self.stage_names = stage_names


# --- Process / persistence / delivery ---


class StageLaunchError(OrchestratorError):
    """The stage worker process could not be spawned."""


class QuotaPersistenceError(OrchestratorError):
    """
    The quota record could not be written durably.

    The call is still counted in memory; `result` carries the counters the
    caller would have received on success.
    """

    def __init__(self, message: str, *, result: Any = None):
        super().__init__(message)
        self.result = result


class ObserverOverflow(OrchestratorError):
    """A slow observer's outbound queue filled up and it was disconnected."""


class ScheduleNotFound(OrchestratorError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"No schedule registered for pipeline '{pipeline_id}'")
        self.pipeline_id = pipeline_id
