"""
Schedules delayed expiration signals through RabbitMQ TTL + dead-lettering.

Each (re)schedule mints a fresh epoch and stores it as the authoritative
``TimeoutEpoch`` for the user *before* anything is published. Overwriting
the epoch is the only cancellation mechanism: older signals are never
revoked at the broker, they simply fail the epoch comparison on delivery.

Two delay queues with fixed ``x-message-ttl`` are used (prompt and final)
instead of per-message expiration, since RabbitMQ only expires messages at
the head of a queue and mixed TTLs in one queue would delay short ones.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from apps.matching.conf import SignalType, epoch_key, prompt_key
from apps.matching.errors import InfrastructureError
from common.messaging.reliable import BrokerPublishError
from common.messaging.types import TimeoutSignal

from .base_store import RedisRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger(__name__).bind(comp="TimeoutScheduler")


class SignalPublisher(Protocol):
    async def publish(self, message: TimeoutSignal, *, queue: Any = "", **broker_kw) -> None: ...


def new_epoch() -> str:
    return uuid.uuid4().hex


class TimeoutScheduler(RedisRepository):
    def __init__(
        self,
        client: Redis,
        publisher: SignalPublisher,
        *,
        prompt_queue: Any,
        final_queue: Any,
        epoch_ttl_s: int,
        prompt_enabled: bool = True,
        **retry_kw,
    ) -> None:
        super().__init__(client, **retry_kw)
        self._publisher = publisher
        self._prompt_queue = prompt_queue
        self._final_queue = final_queue
        self._epoch_ttl_s = epoch_ttl_s
        self._prompt_enabled = prompt_enabled

    async def schedule_expiry(
        self,
        user_id: str,
        topic: str,
        difficulty: str,
        *,
        with_prompt: bool | None = None,
    ) -> str:
        """Persist a fresh epoch and publish the delayed prompt/final signals."""
        epoch = new_epoch()
        with_prompt = self._prompt_enabled if with_prompt is None else with_prompt

        await self._retry_operation(self._client.set, epoch_key(user_id), epoch, ex=self._epoch_ttl_s)
        await self._retry_operation(self._client.delete, prompt_key(user_id))

        stages = [(SignalType.FINAL, self._final_queue)]
        if with_prompt:
            stages.insert(0, (SignalType.PROMPT, self._prompt_queue))

        try:
            for stage, queue in stages:
                signal = TimeoutSignal(
                    type=stage.value,
                    user_id=user_id,
                    epoch=epoch,
                    topic=topic,
                    difficulty=difficulty,
                )
                await self._publisher.publish(signal, queue=queue, persist=True, message_id=f"{epoch}:{stage}")
        except BrokerPublishError as exc:
            log.exception("timeout scheduling failed", user_id=user_id, epoch=epoch)
            await self.cancel(user_id)
            msg = f"Could not schedule expiry for {user_id!r}"
            raise InfrastructureError(msg) from exc

        log.info("expiry scheduled", user_id=user_id, epoch=epoch, prompt=with_prompt)
        return epoch

    async def cancel(self, user_id: str) -> None:
        """Drop the epoch; any in-flight signal for it becomes inert."""
        await self._retry_operation(self._client.delete, epoch_key(user_id), prompt_key(user_id))
        log.debug("expiry invalidated", user_id=user_id)

    async def current_epoch(self, user_id: str) -> str | None:
        return await self._retry_operation(self._client.get, epoch_key(user_id))
