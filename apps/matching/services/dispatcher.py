"""
Best-effort push of match outcomes to connected clients.

``NotificationDispatcher`` owns this process's live ``user_id → handle`` map.
``BrokerNotifier`` exposes the same notify interface but fans events out
through a RabbitMQ exchange, so a worker or another web instance can reach
a user whose socket lives elsewhere; each web instance feeds relayed
envelopes back into its local dispatcher via ``deliver``.

Neither retries nor queues missed pushes: the status record is the durable
fallback and clients poll it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from common.messaging.types import (
    MatchFoundPayload,
    MatchTimeoutPayload,
    PushEnvelope,
    QueueUpdatePayload,
)

if TYPE_CHECKING:
    from common.messaging.reliable import ReliableBrokerPublisher

log = structlog.get_logger(__name__).bind(comp="Dispatcher")


class ConnectionHandle(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Notifier(Protocol):
    async def notify_match_found(self, user_id: str, payload: MatchFoundPayload) -> bool: ...

    async def notify_timeout(self, user_id: str, payload: MatchTimeoutPayload) -> bool: ...

    async def broadcast_queue_update(self, payload: QueueUpdatePayload) -> int: ...


class NotificationDispatcher:
    def __init__(self) -> None:
        self._connections: dict[str, ConnectionHandle] = {}
        self._rooms: defaultdict[str, set[str]] = defaultdict(set)
        self.pushes_sent = 0
        self.pushes_missed = 0

    # ------------------------------------------------------------------ connections
    def register_connection(self, user_id: str, handle: ConnectionHandle) -> None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = handle
        log.info("connection registered", user_id=user_id, replaced=previous is not None)

    def unregister(self, user_id: str, handle: ConnectionHandle | None = None) -> None:
        """Drop the user's connection; with *handle*, only if it is still the current one."""
        current = self._connections.get(user_id)
        if current is None or (handle is not None and current is not handle):
            return
        del self._connections[user_id]
        for members in self._rooms.values():
            members.discard(user_id)
        log.info("connection unregistered", user_id=user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def join_topic(self, user_id: str, topic: str) -> None:
        self._rooms[topic].add(user_id)

    def leave_topic(self, user_id: str, topic: str) -> None:
        self._rooms[topic].discard(user_id)
        if not self._rooms[topic]:
            del self._rooms[topic]

    # ------------------------------------------------------------------ pushes
    async def _send(self, user_id: str, event: str, data: dict[str, Any]) -> bool:
        handle = self._connections.get(user_id)
        if handle is None:
            self.pushes_missed += 1
            log.debug("user not connected, push skipped", user_id=user_id, push_event=event)
            return False
        try:
            await handle.send_json({"event": event, "data": data})
        except Exception as exc:  # noqa: BLE001
            self.pushes_missed += 1
            log.warning("push failed, dropping connection", user_id=user_id, push_event=event, err=str(exc))
            self.unregister(user_id, handle)
            return False
        self.pushes_sent += 1
        return True

    async def notify_match_found(self, user_id: str, payload: MatchFoundPayload) -> bool:
        return await self._send(user_id, "match_found", payload.dump())

    async def notify_timeout(self, user_id: str, payload: MatchTimeoutPayload) -> bool:
        return await self._send(user_id, "match_timeout", payload.dump())

    async def broadcast_queue_update(self, payload: QueueUpdatePayload) -> int:
        delivered = 0
        for user_id in list(self._rooms.get(payload.topic, ())):
            delivered += await self._send(user_id, "queue_update", payload.dump())
        return delivered

    async def deliver(self, envelope: PushEnvelope) -> bool:
        """Hand a relayed envelope to the local connection, if this process holds it."""
        if envelope.event == "queue_update":
            return bool(await self.broadcast_queue_update(QueueUpdatePayload.model_validate(envelope.data)))
        if envelope.user_id is None or not self.is_connected(envelope.user_id):
            return False
        return await self._send(envelope.user_id, envelope.event, envelope.data)

    def stats(self) -> dict[str, Any]:
        return {
            "connected_users": len(self._connections),
            "topic_rooms": {topic: len(members) for topic, members in self._rooms.items()},
            "pushes_sent": self.pushes_sent,
            "pushes_missed": self.pushes_missed,
        }


class BrokerNotifier:
    """Publishes push events to the relay exchange instead of local sockets."""

    def __init__(self, publisher: ReliableBrokerPublisher, *, exchange: Any) -> None:
        self._publisher = publisher
        self._exchange = exchange

    async def _relay(self, envelope: PushEnvelope) -> bool:
        try:
            await self._publisher.publish(envelope, exchange=self._exchange)
        except Exception:
            log.exception("relay publish failed", push_event=envelope.event, user_id=envelope.user_id)
            return False
        return True

    async def notify_match_found(self, user_id: str, payload: MatchFoundPayload) -> bool:
        return await self._relay(PushEnvelope(event="match_found", user_id=user_id, data=payload.dump()))

    async def notify_timeout(self, user_id: str, payload: MatchTimeoutPayload) -> bool:
        return await self._relay(PushEnvelope(event="match_timeout", user_id=user_id, data=payload.dump()))

    async def broadcast_queue_update(self, payload: QueueUpdatePayload) -> int:
        relayed = await self._relay(PushEnvelope(event="queue_update", topic=payload.topic, data=payload.dump()))
        return int(relayed)
