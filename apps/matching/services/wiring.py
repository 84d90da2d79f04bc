"""
Explicit construction of the matching services.

There are no module-level singletons: the ASGI lifespan and the worker both
call ``build_services`` with their settings, and tests inject an in-memory
Redis and a recording publisher instead of real connections.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from redis.asyncio import Redis

from infrastructure.queues import QUEUES, delay_queue

from .coordinator import MatchCoordinator
from .dispatcher import BrokerNotifier, NotificationDispatcher
from .match_finder import MatchFinder
from .queue_store import QueueStore
from .sessions import HttpSessionFactory, LocalSessionFactory
from .status_store import StatusStore
from .timeout_consumer import TimeoutConsumer
from .timeout_scheduler import SignalPublisher, TimeoutScheduler

if TYPE_CHECKING:
    from config.settings import MatchingSettings
    from infrastructure.broker import BrokerRuntime

    from .dispatcher import Notifier
    from .sessions import SessionFactory

log = structlog.get_logger(__name__).bind(comp="MatchingServices")


@dataclass(slots=True)
class MatchingServices:
    settings: MatchingSettings
    redis: Redis
    queue_store: QueueStore
    status_store: StatusStore
    finder: MatchFinder
    scheduler: TimeoutScheduler
    consumer: TimeoutConsumer
    dispatcher: NotificationDispatcher
    notifier: Notifier
    sessions: SessionFactory
    coordinator: MatchCoordinator
    broker: BrokerRuntime | None = None
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    async def start(self, *, consume_timeouts: bool | None = None, relay_pushes: bool = True) -> None:
        """Check Redis, then attach subscribers and start the broker."""
        await self.redis.ping()
        if self.broker is None:
            return
        if consume_timeouts is None:
            consume_timeouts = self.settings.run_consumer_in_app
        if consume_timeouts:
            self.broker.subscribe_timeouts(self.consumer)
        if relay_pushes:
            self.broker.subscribe_relay(self.dispatcher, self.instance_id)
        await self.broker.start()
        log.info("matching services started", instance=self.instance_id, consume_timeouts=consume_timeouts)

    async def stop(self) -> None:
        await self.coordinator.stop()
        if self.broker is not None:
            await self.broker.shutdown()
        await self.sessions.aclose()
        await self.redis.aclose()
        log.info("matching services stopped", instance=self.instance_id)

    def stats(self) -> dict[str, Any]:
        retry_loop = self.coordinator.retry_loop
        return {
            "instance": self.instance_id,
            "connections": self.dispatcher.stats(),
            "timeouts": self.consumer.metrics.as_dict(),
            "retry_timers": retry_loop.active if retry_loop else 0,
            "broker_connected": self.broker.is_connected if self.broker else False,
            "publishes": (
                {"sent": self.broker.publisher.published, "failed": self.broker.publisher.failed}
                if self.broker
                else None
            ),
        }


def build_session_factory(settings: MatchingSettings) -> SessionFactory:
    if settings.collaboration_url:
        return HttpSessionFactory(settings.collaboration_url, timeout_s=settings.collaboration_timeout_s)
    return LocalSessionFactory()


def build_services(
    settings: MatchingSettings,
    *,
    redis: Redis | None = None,
    broker: BrokerRuntime | None = None,
    publisher: SignalPublisher | None = None,
    sessions: SessionFactory | None = None,
) -> MatchingServices:
    """Wire every component; *publisher* overrides the broker's when given."""
    redis = redis or Redis.from_url(settings.redis_url, decode_responses=True)
    if publisher is None:
        if broker is None:
            msg = "build_services needs a broker runtime or a publisher"
            raise ValueError(msg)
        publisher = broker.publisher

    retry_kw = {"max_retries": settings.store_max_retries, "retry_delay": settings.store_retry_delay_s}
    dispatcher = NotificationDispatcher()
    notifier: Notifier = dispatcher
    if settings.notify_via_broker and broker is not None:
        notifier = BrokerNotifier(broker.publisher, exchange=broker.events_exchange)

    if broker is not None:
        prompt_queue, final_queue = broker.prompt_queue, broker.final_queue
    else:
        prompt_queue = delay_queue(QUEUES.MATCH_TIMEOUTS_PROMPT_DELAY, settings.prompt_delay_s)
        final_queue = delay_queue(QUEUES.MATCH_TIMEOUTS_FINAL_DELAY, settings.final_delay_s)

    queue_store = QueueStore(redis, **retry_kw)
    status_store = StatusStore(redis, ttl_s=settings.status_ttl_s, **retry_kw)
    finder = MatchFinder(redis, reservation_ttl_s=settings.match_reservation_ttl_s, **retry_kw)
    scheduler = TimeoutScheduler(
        redis,
        publisher,
        prompt_queue=prompt_queue,
        final_queue=final_queue,
        epoch_ttl_s=settings.epoch_ttl_s,
        prompt_enabled=settings.prompt_enabled,
        **retry_kw,
    )
    consumer = TimeoutConsumer(
        redis,
        queue_store,
        notifier,
        status_ttl_s=settings.status_ttl_s,
        prompt_ttl_s=settings.prompt_marker_ttl_s,
        **retry_kw,
    )
    sessions = sessions or build_session_factory(settings)
    coordinator = MatchCoordinator(
        queue_store=queue_store,
        status_store=status_store,
        finder=finder,
        scheduler=scheduler,
        notifier=notifier,
        sessions=sessions,
        retry_interval_s=settings.retry_interval_s,
        retry_max_age_s=settings.final_delay_s,
    )
    return MatchingServices(
        settings=settings,
        redis=redis,
        queue_store=queue_store,
        status_store=status_store,
        finder=finder,
        scheduler=scheduler,
        consumer=consumer,
        dispatcher=dispatcher,
        notifier=notifier,
        sessions=sessions,
        coordinator=coordinator,
        broker=broker,
    )
