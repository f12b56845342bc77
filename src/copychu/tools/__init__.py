from .quota import can_proceed, get_quota_guard, remaining_calls, set_quota_guard, summary, track_call

__all__ = [
    "can_proceed",
    "get_quota_guard",
    "remaining_calls",
    "set_quota_guard",
    "summary",
    "track_call",
]
