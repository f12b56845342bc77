from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
import itertools
import logging
from typing import Any, Protocol

from copychu.contracts.errors.errors import ObserverOverflow

logger = logging.getLogger("copychu.event_hub")

ALL = "all"
_CLOSED = object()


class HubEvent(Protocol):
    kind: str
    run_id: str | None
    seq: int | None

    def to_dict(self) -> dict[str, Any]: ...


class ObserverHandle:
    """
    One connected observer.

    Yields the replay captured at subscribe time, then live events from a
    bounded queue. Iteration ends after unsubscribe; it raises ObserverOverflow
    when the hub dropped the observer for falling behind.
    """

    def __init__(self, observer_id: int, run_filter: str, replay: list[HubEvent], maxsize: int):
        self.observer_id = observer_id
        self.run_filter = run_filter
        self._replay: deque[HubEvent] = deque(replay)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.overflowed = False

    def matches(self, event: HubEvent) -> bool:
        # run-less events (quota) go to everyone
        return self.run_filter == ALL or event.run_id is None or event.run_id == self.run_filter

    def _offer(self, event: HubEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _close(self, *, overflow: bool = False) -> None:
        self.closed = True
        self.overflowed = overflow
        # wake a consumer blocked on an empty queue
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    @property
    def pending(self) -> int:
        return len(self._replay) + self._queue.qsize()

    async def get(self) -> HubEvent | None:
        """Next event, or None once the observer was unsubscribed."""
        if self._replay:
            return self._replay.popleft()
        if self.overflowed:
            raise ObserverOverflow(f"observer {self.observer_id} fell behind and was disconnected")
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if self.overflowed:
            raise ObserverOverflow(f"observer {self.observer_id} fell behind and was disconnected")
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> ObserverHandle:
        return self

    async def __anext__(self) -> HubEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class EventHub:
    """
    In-memory pub/sub for log lines, run transitions and quota updates.

    - Keeps a bounded ring buffer per run (and one for run-less events) so a
      late observer gets recent context before live events.
    - publish() never blocks: every observer has its own bounded queue, and an
      observer whose queue is full is disconnected instead of stalling others.

    publish/subscribe are synchronous and must be called from the event loop
    thread; that is what makes replay + live delivery gap-free.
    """

    def __init__(self, *, ring_size: int = 1000, queue_size: int = 256, max_buffered_runs: int = 20):
        self._ring_size = ring_size
        self._queue_size = queue_size
        self._max_buffered_runs = max_buffered_runs
        self._offsets = itertools.count(1)
        self._ids = itertools.count(1)
        self._runs: OrderedDict[str, deque[tuple[int, HubEvent]]] = OrderedDict()
        self._global: deque[tuple[int, HubEvent]] = deque(maxlen=50)
        self._observers: dict[int, ObserverHandle] = {}

    # -------- publishing --------

    def _buffer_for(self, run_id: str) -> deque[tuple[int, HubEvent]]:
        buf = self._runs.get(run_id)
        if buf is None:
            buf = deque(maxlen=self._ring_size)
            self._runs[run_id] = buf
            while len(self._runs) > self._max_buffered_runs:
                evicted, _ = self._runs.popitem(last=False)
                logger.debug("Dropped replay buffer for run %s", evicted)
        return buf

    def publish(self, event: HubEvent) -> None:
        offset = next(self._offsets)
        if event.run_id is None:
            self._global.append((offset, event))
        else:
            self._buffer_for(event.run_id).append((offset, event))

        for handle in list(self._observers.values()):
            if not handle.matches(event):
                continue
            if not handle._offer(event):
                self._drop(handle)

    def _drop(self, handle: ObserverHandle) -> None:
        self._observers.pop(handle.observer_id, None)
        handle._close(overflow=True)
        logger.warning(
            "Observer %d (filter=%s) overflowed its queue (%d) and was disconnected",
            handle.observer_id,
            handle.run_filter,
            self._queue_size,
        )

    # -------- observers --------

    def _replay_for(self, run_filter: str) -> list[HubEvent]:
        rows: list[tuple[int, HubEvent]] = list(self._global)
        if run_filter == ALL:
            for buf in self._runs.values():
                rows.extend(buf)
        else:
            rows.extend(self._runs.get(run_filter, ()))
        rows.sort(key=lambda r: r[0])
        return [evt for _, evt in rows]

    def subscribe(self, run_filter: str = ALL, *, replay: bool = True) -> ObserverHandle:
        handle = ObserverHandle(
            observer_id=next(self._ids),
            run_filter=run_filter or ALL,
            replay=self._replay_for(run_filter or ALL) if replay else [],
            maxsize=self._queue_size,
        )
        self._observers[handle.observer_id] = handle
        logger.debug("Observer %d subscribed (filter=%s)", handle.observer_id, handle.run_filter)
        return handle

    def unsubscribe(self, handle: ObserverHandle) -> None:
        if self._observers.pop(handle.observer_id, None) is not None:
            logger.debug("Observer %d unsubscribed", handle.observer_id)
        if not handle.closed:
            handle._close()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    # -------- history queries --------

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def recent(
        self,
        run_id: str,
        *,
        limit: int = 100,
        kind: str | None = None,
        stage_name: str | None = None,
        stream: str | None = None,
    ) -> list[HubEvent]:
        out: list[HubEvent] = []
        for _, evt in self._runs.get(run_id, ()):
            if kind is not None and evt.kind != kind:
                continue
            if stage_name is not None and getattr(evt, "stage_name", None) != stage_name:
                continue
            if stream is not None and getattr(evt, "stream", None) != stream:
                continue
            out.append(evt)
        return out[-limit:] if limit else out
