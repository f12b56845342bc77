__version__ = "0.1.0"

# Server
from .server.app_factory import create_app  # FastAPI app with all services wired

# Core
from .core.runtime.run_manager import RunManager  # run state machine
from .core.runtime.run_types import RunRecord, RunStatus, StageOutcome
from .services.channel.event_hub import EventHub
from .services.execution.stage_supervisor import StageSupervisor
from .services.quota.quota_guard import QuotaGuard
from .services.schedule.scheduler import Scheduler

# Worker helpers
from .tools import can_proceed, remaining_calls, track_call

__all__ = [
    # Server
    "create_app",
    # Core
    "RunManager", "RunRecord", "RunStatus", "StageOutcome",
    "EventHub", "StageSupervisor", "QuotaGuard", "Scheduler",
    # Worker helpers
    "track_call", "can_proceed", "remaining_calls",
]
