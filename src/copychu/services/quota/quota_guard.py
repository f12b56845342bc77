from __future__ import annotations

from collections.abc import Callable, Iterable
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any
from zoneinfo import ZoneInfo

from copychu.contracts.errors.errors import QuotaPersistenceError
from copychu.storage.quota.fs_quota_store import FSQuotaStore

logger = logging.getLogger("copychu.quota")


@dataclass
class QuotaState:
    date: str  # ISO calendar day, the counter's partition key
    limit: int
    call_count: int = 0
    per_function_counts: dict[str, int] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.call_count)

    def to_record(self, now: datetime) -> dict[str, Any]:
        return {
            "date": self.date,
            "callCount": self.call_count,
            "limit": self.limit,
            "remaining": self.remaining,
            "perFunctionCounts": dict(self.per_function_counts),
            "callHistory": list(self.history),
            "lastUpdated": now.isoformat(),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any], *, limit: int) -> QuotaState:
        # also accept the field names written by the original JS counter
        count = data.get("callCount", data.get("dailyCalls", 0))
        by_fn = data.get("perFunctionCounts", data.get("byFunction", {})) or {}
        return cls(
            date=str(data.get("date", "")),
            limit=limit,
            call_count=int(count or 0),
            per_function_counts={str(k): int(v) for k, v in by_fn.items()},
            history=list(data.get("callHistory", []) or []),
        )


@dataclass(frozen=True)
class ThresholdNotice:
    """Fired once per configured warning level per day."""

    threshold: int
    call_count: int
    limit: int
    date: str
    # True when re-derived from the stored count at load time rather than
    # observed as a fresh crossing.
    replayed: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "callCount": self.call_count,
            "limit": self.limit,
            "date": self.date,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class QuotaCallResult:
    label: str
    call_count: int
    remaining: int
    session_count: int
    persisted: bool = True
    notices: tuple[ThresholdNotice, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "callCount": self.call_count,
            "remaining": self.remaining,
            "sessionCount": self.session_count,
            "persisted": self.persisted,
            "notices": [n.to_payload() for n in self.notices],
        }


NoticeListener = Callable[[ThresholdNotice], None]


class QuotaGuard:
    """
    Date-scoped counter for calls against the rate-limited external API.

    The durable record is the single source of truth. Every increment runs
    read-modify-write under the store's file lock, so concurrent callers in
    this process and in stage processes never lose updates.

    A call that could not be persisted stays counted in memory and is
    re-applied on the next successful write (the counter may over-count,
    it never under-counts).
    """

    def __init__(
        self,
        store: FSQuotaStore,
        *,
        limit: int = 1500,
        thresholds: Iterable[int] = (1000, 1500),
        low_remaining_warning: int = 100,
        history_size: int = 100,
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._limit = limit
        self._thresholds = sorted(set(thresholds))
        self._low_remaining_warning = low_remaining_warning
        self._history_size = history_size
        self._tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._state = QuotaState(date=self._today(), limit=limit)
        self._unsaved: list[dict[str, Any]] = []
        self._observed_count = 0  # last count this guard has seen or announced
        self._listeners: list[NoticeListener] = []

        self._session_date = self._state.date
        self.session_count = 0
        self.session_by_function: dict[str, int] = {}

    # -------- helpers --------

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _today(self) -> str:
        return self._now().date().isoformat()

    def _fresh(self, day: str) -> QuotaState:
        return QuotaState(date=day, limit=self._limit)

    def _rolled(self, state: QuotaState, day: str) -> QuotaState:
        if state.date != day:
            return self._fresh(day)
        return state

    def _read_locked(self, day: str) -> tuple[QuotaState, bool]:
        """Read the durable record; returns (state, rolled_over)."""
        data = self._store.read()
        if data is None:
            return self._fresh(day), False
        state = QuotaState.from_record(data, limit=self._limit)
        if state.date != day:
            logger.info("New day detected (%s -> %s); resetting quota counter", state.date, day)
            return self._fresh(day), True
        return state, False

    def _apply(self, state: QuotaState, call: dict[str, Any]) -> None:
        label = call["function"]
        state.call_count += 1
        state.per_function_counts[label] = state.per_function_counts.get(label, 0) + 1
        state.history.append({**call, "dailyTotal": state.call_count})
        if len(state.history) > self._history_size:
            state.history = state.history[-self._history_size :]

    def _with_unsaved(self, base: QuotaState) -> QuotaState:
        state = copy.deepcopy(base)
        for call in self._unsaved:
            # calls counted on a previous day belong to that day's budget
            if call["date"] == state.date:
                self._apply(state, {k: v for k, v in call.items() if k != "date"})
        return state

    def _crossed(self, before: int, after: int) -> list[int]:
        return [t for t in self._thresholds if before < t <= after]

    def _notify(self, notices: list[ThresholdNotice]) -> None:
        for n in notices:
            if n.replayed:
                logger.info(
                    "Quota threshold %d already reached today (%d/%d)", n.threshold, n.call_count, n.limit
                )
            else:
                logger.warning(
                    "Quota threshold crossed: %d/%d calls used (threshold %d)",
                    n.call_count,
                    n.limit,
                    n.threshold,
                )
            for listener in list(self._listeners):
                try:
                    listener(n)
                except Exception:  # noqa: BLE001
                    logger.exception("Quota notice listener failed")

    # -------- public API --------

    def add_listener(self, listener: NoticeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NoticeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def store(self) -> FSQuotaStore:
        return self._store

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def thresholds(self) -> list[int]:
        return list(self._thresholds)

    def load(self) -> QuotaState:
        """
        Load the durable record, resetting it when it belongs to another day.

        Thresholds already reached by the stored count are re-announced as
        replayed notices, so a restarted process knows where the budget stands.
        """
        with self._lock:
            day = self._today()
            with self._store.locked():
                state, rolled = self._read_locked(day)
                if rolled:
                    try:
                        self._store.write(state.to_record(self._now()))
                    except OSError:
                        logger.warning("Could not persist quota reset for %s", day, exc_info=True)
            self._state = state
            self._observed_count = state.call_count
            notices = [
                ThresholdNotice(t, state.call_count, self._limit, state.date, replayed=True)
                for t in self._thresholds
                if t <= state.call_count
            ]
            result = copy.deepcopy(state)
        self._notify(notices)
        return result

    def record_call(self, label: str) -> QuotaCallResult:
        """
        Count one billable call and persist the record.

        Raises QuotaPersistenceError when the record could not be written; the
        increment is kept in memory and the error carries the result.
        """
        now = self._now()
        day = now.date().isoformat()
        error: Exception | None = None

        with self._lock:
            if day != self._session_date:
                self._session_date = day
                self.session_count = 0
                self.session_by_function = {}

            self._unsaved.append({"function": label, "time": now.isoformat(), "date": day})
            try:
                with self._store.locked():
                    base, _ = self._read_locked(day)
                    self._state = base
                    state = self._with_unsaved(base)
                    self._store.write(state.to_record(now))
                self._state = state
                self._unsaved.clear()
            except (OSError, TimeoutError) as exc:
                error = exc
                state = self._with_unsaved(self._rolled(self._state, day))

            self.session_count += 1
            self.session_by_function[label] = self.session_by_function.get(label, 0) + 1

            # calls by other processes announce their own crossings
            before = state.call_count - 1
            notices = [
                ThresholdNotice(t, state.call_count, self._limit, state.date)
                for t in self._crossed(before, state.call_count)
            ]
            self._observed_count = state.call_count

            result = QuotaCallResult(
                label=label,
                call_count=state.call_count,
                remaining=state.remaining,
                session_count=self.session_count,
                persisted=error is None,
                notices=tuple(notices),
            )

        logger.info(
            "API call %d/%d (%.1f%%) | session: %d | %s",
            result.call_count,
            self._limit,
            (result.call_count / self._limit) * 100 if self._limit else 100.0,
            result.session_count,
            label,
        )
        if 0 < result.remaining <= self._low_remaining_warning:
            logger.warning("Only %d calls left in today's budget", result.remaining)
        elif result.remaining <= 0:
            logger.error("Daily call budget exhausted (%d/%d)", result.call_count, self._limit)
        self._notify(notices)

        if error is not None:
            logger.error("Failed to persist quota record %s: %s", self._store.path, error)
            raise QuotaPersistenceError(
                f"Quota record could not be saved: {error}", result=result
            ) from error
        return result

    def refresh(self) -> list[ThresholdNotice]:
        """
        Re-read the durable record to pick up calls made by other processes.

        Returns notices for thresholds crossed since this guard last looked.
        """
        with self._lock:
            day = self._today()
            with self._store.locked():
                base, _ = self._read_locked(day)
            self._state = base
            state = self._with_unsaved(base)
            before = self._observed_count if self._observed_count <= state.call_count else 0
            notices = [
                ThresholdNotice(t, state.call_count, self._limit, state.date)
                for t in self._crossed(before, state.call_count)
            ]
            self._observed_count = state.call_count
        self._notify(notices)
        return notices

    def state(self) -> QuotaState:
        with self._lock:
            return self._with_unsaved(self._rolled(self._state, self._today()))

    def remaining_calls(self) -> int:
        return self.state().remaining

    def can_proceed(self) -> bool:
        return self.remaining_calls() > 0

    def snapshot(self) -> dict[str, Any]:
        state = self.state()
        return {
            "date": state.date,
            "callCount": state.call_count,
            "limit": state.limit,
            "remaining": state.remaining,
            "perFunctionCounts": dict(state.per_function_counts),
            "sessionCount": self.session_count,
            "sessionByFunction": dict(self.session_by_function),
            "crossedThresholds": [t for t in self._thresholds if t <= state.call_count],
            "unsavedCalls": len(self._unsaved),
        }

    def summary(self) -> str:
        s = self.snapshot()
        pct = (s["callCount"] / s["limit"] * 100) if s["limit"] else 100.0
        lines = [
            "=" * 50,
            "API usage",
            "=" * 50,
            f"date:      {s['date']}",
            f"today:     {s['callCount']}/{s['limit']} ({pct:.1f}%)",
            f"remaining: {s['remaining']}",
            f"session:   {s['sessionCount']}",
        ]
        for title, counts in (("session by function", s["sessionByFunction"]),
                              ("today by function", s["perFunctionCounts"])):
            if counts:
                lines.append(f"{title}:")
                for name, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True):
                    lines.append(f"  - {name}: {count}")
        lines.append("=" * 50)
        return "\n".join(lines)
