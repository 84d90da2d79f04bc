"""
Consumes dead-lettered expiration signals and evicts still-waiting users.

Delivery is at-least-once, so ``process`` is idempotent: the status check,
the epoch comparison and the eviction run as one Lua script, and only the
invocation that actually flips the status to ``not_found`` notifies the
user. Every other outcome is a silent no-op.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError

from apps.matching.conf import SignalOutcome, SignalType, entry_key, epoch_key, prompt_key, reserve_key, status_key
from apps.matching.errors import InfrastructureError, StaleSignalError
from common.messaging.types import MatchTimeoutPayload, TimeoutSignal

from . import scripts
from .base_store import RedisRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from .dispatcher import Notifier
    from .queue_store import QueueStore

log = structlog.get_logger(__name__).bind(comp="TimeoutConsumer")

_STALE_REPLIES = frozenset({"not_pending", "stale_epoch"})


class AckableMessage(Protocol):
    async def ack(self) -> None: ...

    async def reject(self) -> None: ...

    async def nack(self) -> None: ...


# ───────────────────────── metrics struct ───────────────────────
@dataclass(slots=True)
class ConsumerMetrics:
    expired: int = 0
    prompted: int = 0
    stale: int = 0
    deferred: int = 0
    rejected: int = 0
    failed: int = 0
    last_activity: datetime | None = None
    startup_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    def record(self, outcome: SignalOutcome) -> None:
        self.last_activity = datetime.now(UTC)
        match outcome:
            case SignalOutcome.EXPIRED:
                self.expired += 1
            case SignalOutcome.PROMPTED:
                self.prompted += 1
            case SignalOutcome.STALE:
                self.stale += 1
            case SignalOutcome.DEFERRED:
                self.deferred += 1
            case SignalOutcome.REJECTED:
                self.rejected += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "expired": self.expired,
            "prompted": self.prompted,
            "stale": self.stale,
            "deferred": self.deferred,
            "rejected": self.rejected,
            "failed": self.failed,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "uptime_s": round((datetime.now(UTC) - self.startup_time).total_seconds(), 1),
        }


# ───────────────────────── consumer ─────────────────────────────
class TimeoutConsumer(RedisRepository):
    def __init__(
        self,
        client: Redis,
        queue_store: QueueStore,
        notifier: Notifier,
        *,
        status_ttl_s: int = 3600,
        prompt_ttl_s: int = 120,
        **retry_kw,
    ) -> None:
        super().__init__(client, **retry_kw)
        self._queue_store = queue_store
        self._notifier = notifier
        self._status_ttl_s = status_ttl_s
        self._prompt_ttl_s = prompt_ttl_s
        self._expire = self._script(scripts.EXPIRE_REQUEST)
        self.metrics = ConsumerMetrics()

    @staticmethod
    def parse(raw: Any) -> TimeoutSignal | None:
        try:
            if isinstance(raw, TimeoutSignal):
                return raw
            if isinstance(raw, bytes | str):
                return TimeoutSignal.model_validate_json(raw)
            if isinstance(raw, dict):
                return TimeoutSignal.model_validate(raw)
        except PydanticValidationError as exc:
            log.warning("malformed timeout signal", err=str(exc))
            return None
        log.error("invalid message type", type=type(raw).__name__)
        return None

    async def process(self, raw: Any) -> SignalOutcome:
        """
        Apply one expiration signal.

        Raises ``InfrastructureError`` when the store is unreachable; the
        caller should redeliver the message later.
        """
        signal = self.parse(raw)
        if signal is None:
            self.metrics.record(SignalOutcome.REJECTED)
            return SignalOutcome.REJECTED

        try:
            outcome = await self._apply(signal)
        except StaleSignalError as exc:
            log.debug("stale signal ignored", user_id=exc.user_id, reason=exc.reason, epoch=signal.epoch)
            outcome = SignalOutcome.STALE
        self.metrics.record(outcome)
        return outcome

    async def _apply(self, signal: TimeoutSignal) -> SignalOutcome:
        user_id = signal.user_id
        now = time.time()
        reply = await self._retry_operation(
            self._expire,
            keys=[
                status_key(user_id),
                epoch_key(user_id),
                entry_key(user_id),
                prompt_key(user_id),
                reserve_key(user_id),
            ],
            args=[signal.type, signal.epoch, user_id, repr(now), self._status_ttl_s, self._prompt_ttl_s],
        )
        if reply in _STALE_REPLIES:
            raise StaleSignalError(user_id, reply)

        if reply == "prompted":
            log.info("user nearing timeout", user_id=user_id, epoch=signal.epoch)
            return SignalOutcome.PROMPTED

        if reply == "reserved":
            log.info("timeout deferred, match in flight", user_id=user_id, epoch=signal.epoch)
            return SignalOutcome.DEFERRED

        if reply != "expired" or signal.type != SignalType.FINAL:
            msg = f"Unexpected expiration reply {reply!r} for {user_id!r}"
            raise InfrastructureError(msg)

        await self._queue_store.sweep(user_id)
        log.info("match request expired", user_id=user_id, topic=signal.topic, difficulty=signal.difficulty)
        await self._notifier.notify_timeout(
            user_id,
            MatchTimeoutPayload(
                user_id=user_id,
                topic=signal.topic,
                difficulty=signal.difficulty,
                timeout_at=now,
            ),
        )
        return SignalOutcome.EXPIRED

    async def handle_delivery(self, body: Any, message: AckableMessage, *, requeue_delay_s: float = 1.0) -> None:
        """
        Broker-facing wrapper: settle *message* explicitly for every outcome.

        Processed and stale signals are acked, unparseable ones are rejected
        without requeue. Store outages and final signals for a user whose
        match is still in flight are nacked back onto the queue after
        *requeue_delay_s*.
        """
        try:
            outcome = await self.process(body)
        except InfrastructureError as exc:
            self.metrics.failed += 1
            log.warning("signal processing failed, requeueing", err=str(exc), delay_s=requeue_delay_s)
            await asyncio.sleep(requeue_delay_s)
            await message.nack()
            return

        match outcome:
            case SignalOutcome.REJECTED:
                await message.reject()
            case SignalOutcome.DEFERRED:
                await asyncio.sleep(requeue_delay_s)
                await message.nack()
            case _:
                await message.ack()
