# /events (WebSocket)

from __future__ import annotations

import asyncio
from contextlib import suppress
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from copychu.contracts.errors.errors import ObserverOverflow
from copychu.core.runtime.runtime_services import current_services
from copychu.services.channel.event_hub import ALL, EventHub, ObserverHandle

router = APIRouter(tags=["events"])
logger = logging.getLogger("copychu.api.events")

# 1013 "try again later": the client fell behind and should reconnect
OVERFLOW_CLOSE_CODE = 1013


class _Subscription:
    """One websocket's current hub subscription and its delivery task."""

    def __init__(self, hub: EventHub, websocket: WebSocket):
        self._hub = hub
        self._ws = websocket
        self.handle: ObserverHandle | None = None
        self._task: asyncio.Task | None = None

    async def _deliver(self, handle: ObserverHandle) -> None:
        try:
            async for evt in handle:
                await self._ws.send_json(evt.to_dict())
        except ObserverOverflow:
            logger.info("Closing websocket of observer %d after overflow", handle.observer_id)
            with suppress(RuntimeError):
                await self._ws.close(code=OVERFLOW_CLOSE_CODE, reason="observer queue overflow")
        except (WebSocketDisconnect, RuntimeError) as exc:
            # client went away mid-send; the receive loop tears the subscription down
            logger.debug("Delivery to observer %d stopped: %r", handle.observer_id, exc)

    async def start(self, run_filter: str, *, replay: bool) -> None:
        await self.stop()
        # subscribe and ack before delivery starts so replay follows the ack
        self.handle = self._hub.subscribe(run_filter, replay=replay)
        await self._ws.send_json({"kind": "subscribed", "run_id": self.handle.run_filter})
        self._task = asyncio.create_task(self._deliver(self.handle))

    async def stop(self) -> None:
        if self.handle is not None:
            self._hub.unsubscribe(self.handle)
            self.handle = None
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None


@router.websocket("/events")
async def events_ws(websocket: WebSocket, run_id: str = ALL, replay: bool = True):
    """
    Live stream of log lines, run transitions and quota updates.

    Subscribes to `run_id` (or "all") on connect. Client messages:
      {"type": "subscribe", "run_id": "...", "replay": true}
      {"type": "unsubscribe"}
      {"type": "ping"}
    """
    hub: EventHub = current_services().hub
    await websocket.accept()
    sub = _Subscription(hub, websocket)

    try:
        await sub.start(run_id, replay=replay)
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"kind": "error", "message": "invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"kind": "error", "message": "expected an object"})
                continue

            mtype = msg.get("type")
            if mtype == "subscribe":
                await sub.start(str(msg.get("run_id") or ALL), replay=bool(msg.get("replay", True)))
            elif mtype == "unsubscribe":
                await sub.stop()
                await websocket.send_json({"kind": "unsubscribed"})
            elif mtype == "ping":
                await websocket.send_json({"kind": "pong"})
            else:
                await websocket.send_json({"kind": "error", "message": f"unknown message type: {mtype!r}"})
    except WebSocketDisconnect:
        pass
    finally:
        await sub.stop()
