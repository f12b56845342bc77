"""
Helpers for stage workers written in Python.

Stage processes inherit COPYCHU_WORKSPACE and COPYCHU_QUOTA__PATH from the
orchestrator, so the guard built here writes to the same durable record.

    from copychu.tools import track_call, can_proceed

    if can_proceed():
        image = client.generate(...)
        track_call("generateImage")
"""

from __future__ import annotations

import logging
import threading

from copychu.config.loader import load_settings
from copychu.contracts.errors.errors import QuotaPersistenceError
from copychu.services.container.default_container import build_quota_guard
from copychu.services.quota.quota_guard import QuotaCallResult, QuotaGuard

logger = logging.getLogger("copychu.tools.quota")

_guard: QuotaGuard | None = None
_guard_lock = threading.Lock()


def get_quota_guard() -> QuotaGuard:
    global _guard
    with _guard_lock:
        if _guard is None:
            guard = build_quota_guard(load_settings())
            guard.load()
            _guard = guard
        return _guard


def set_quota_guard(guard: QuotaGuard | None) -> None:
    global _guard
    with _guard_lock:
        _guard = guard


def track_call(label: str) -> QuotaCallResult:
    """
    Count one billable call. Never raises on persistence failures: the call
    stays counted in memory and is saved with the next successful write.
    """
    try:
        return get_quota_guard().record_call(label)
    except QuotaPersistenceError as exc:
        logger.warning("Call %s counted but not persisted yet: %s", label, exc)
        return exc.result


def remaining_calls() -> int:
    return get_quota_guard().remaining_calls()


def can_proceed() -> bool:
    return get_quota_guard().can_proceed()


def summary() -> str:
    return get_quota_guard().summary()
