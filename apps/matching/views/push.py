# apps/matching/views/push.py
"""
WebSocket push channel.

Frames in both directions are JSON ``{"event": ..., "data": {...}}``. A socket
receives match pushes only after an ``authenticate`` frame binds it to a
user id; a newer socket for the same user replaces the older one.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import orjson
import structlog
from starlette.websockets import WebSocketDisconnect

from apps.matching.conf import TOPIC_MAX_LEN, USER_ID_MAX_LEN, USER_ID_PATTERN

if TYPE_CHECKING:
    from starlette.websockets import WebSocket

    from apps.matching.services.dispatcher import NotificationDispatcher

log = structlog.get_logger(__name__).bind(comp="PushSocket")

_USER_ID_RE = re.compile(USER_ID_PATTERN)


class SocketHandle:
    """Adapts a Starlette WebSocket to the dispatcher's connection handle."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, data: Any) -> None:
        await self._ws.send_text(orjson.dumps(data).decode())


class PushSession:
    def __init__(self, dispatcher: NotificationDispatcher, handle: SocketHandle) -> None:
        self._dispatcher = dispatcher
        self._handle = handle
        self.user_id: str | None = None

    async def _reply(self, event: str, **data: Any) -> None:
        await self._handle.send_json({"event": event, "data": data})

    async def handle_frame(self, raw: str) -> None:
        try:
            frame = orjson.loads(raw)
        except orjson.JSONDecodeError:
            await self._reply("error", message="Frames must be JSON")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._reply("error", message="Frames must be objects with an 'event'")
            return

        data = frame.get("data")
        if not isinstance(data, dict):
            data = {}
        match frame["event"]:
            case "authenticate":
                await self._authenticate(data.get("userId"))
            case "join_topic" | "leave_topic" as event:
                await self._topic(event, data.get("topic"))
            case "ping":
                await self._reply("pong")
            case other:
                await self._reply("error", message=f"Unknown event {other!r}")

    async def _authenticate(self, user_id: Any) -> None:
        if not isinstance(user_id, str) or len(user_id) > USER_ID_MAX_LEN or not _USER_ID_RE.match(user_id):
            await self._reply("error", message="Invalid userId")
            return
        if self.user_id and self.user_id != user_id:
            self._dispatcher.unregister(self.user_id, self._handle)
        self.user_id = user_id
        self._dispatcher.register_connection(user_id, self._handle)
        await self._reply("authenticated", userId=user_id)

    async def _topic(self, event: str, topic: Any) -> None:
        if self.user_id is None:
            await self._reply("error", message="Authenticate first")
            return
        if not isinstance(topic, str) or not topic or len(topic) > TOPIC_MAX_LEN:
            await self._reply("error", message="Invalid topic")
            return
        if event == "join_topic":
            self._dispatcher.join_topic(self.user_id, topic)
            await self._reply("topic_joined", topic=topic)
        else:
            self._dispatcher.leave_topic(self.user_id, topic)
            await self._reply("topic_left", topic=topic)

    def close(self) -> None:
        if self.user_id is not None:
            self._dispatcher.unregister(self.user_id, self._handle)


async def push_socket(websocket: WebSocket) -> None:
    dispatcher: NotificationDispatcher = websocket.app.state.services.dispatcher
    await websocket.accept()
    session = PushSession(dispatcher, SocketHandle(websocket))
    try:
        while True:
            await session.handle_frame(await websocket.receive_text())
    except WebSocketDisconnect as exc:
        log.debug("socket closed", user_id=session.user_id, code=exc.code)
    finally:
        session.close()
