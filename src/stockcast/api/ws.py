"""WebSocket endpoint delivering prediction outcome events to their owners."""

from __future__ import annotations

import asyncio
import logging
import threading

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from stockcast.api.auth import decode_token
from stockcast.api.deps import app_state

logger = logging.getLogger(__name__)

router = APIRouter()

PING_INTERVAL = 30  # seconds between keep-alive pings
QUEUE_SIZE = 100


class NotificationHub:
    """Fan-out of outcome events to connected sockets, keyed by user id.

    ``publish`` may be called from any thread (the scheduler runs ticks in a
    worker thread); delivery is handed to the event loop that owns the queues.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def subscribe(self, user_id: str) -> asyncio.Queue:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        with self._lock:
            self._subscribers.setdefault(user_id, set()).add(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(user_id)
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                del self._subscribers[user_id]

    def subscriber_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._subscribers.get(user_id, ()))
            return sum(len(q) for q in self._subscribers.values())

    def publish(self, user_id: str, event: dict) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._deliver, user_id, event)

    def _deliver(self, user_id: str, event: dict) -> None:
        with self._lock:
            queues = list(self._subscribers.get(user_id, ()))
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping event for slow subscriber %s", user_id)


def _socket_user_id(websocket: WebSocket) -> str | None:
    config = app_state.config
    if config and config.auth_secret_key:
        token = websocket.query_params.get("token") or websocket.cookies.get("session")
        if not token:
            return None
        return decode_token(token, config.auth_secret_key)
    # Dev mode: caller names itself
    return websocket.query_params.get("userId") or websocket.headers.get("x-user-id")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/ws/notifications")
async def ws_notifications(websocket: WebSocket):
    """Push outcome events for the connected user as they are evaluated."""
    user_id = _socket_user_id(websocket)
    if not user_id:
        await websocket.close(code=4001, reason="Not authenticated")
        return

    hub = app_state.hub
    if hub is None:
        await websocket.close(code=1011, reason="Notifications unavailable")
        return

    await websocket.accept()
    queue = hub.subscribe(user_id)
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))

    try:
        unread: list[dict] = []
        if app_state.registry is not None:
            unread = await asyncio.to_thread(
                app_state.registry.get_notifications, user_id, True
            )
        await websocket.send_json({"type": "init", "unread": unread})

        while not receiver.done():
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {getter, receiver},
                timeout=PING_INTERVAL,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if getter in done:
                await websocket.send_json(getter.result())
                continue
            getter.cancel()
            if not done:
                await websocket.send_json({"type": "ping"})

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket error for %s", user_id)
        try:
            await websocket.close()
        except Exception:
            pass
    finally:
        receiver.cancel()
        hub.unsubscribe(user_id, queue)
