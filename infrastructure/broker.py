# infrastructure/broker.py
# ============================================================================
"""
FastStream RabbitMQ broker for the matching pipeline.

``BrokerRuntime`` owns one broker instance, its reliable publisher and the
declared topology. It is built from settings by whoever needs it (the ASGI
lifespan or the standalone worker); nothing here connects at import time.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import structlog
from aio_pika.exceptions import AMQPError
from faststream.rabbit import RabbitBroker
from faststream.rabbit.annotations import RabbitMessage

from common.messaging.reliable import ReliableBrokerPublisher
from common.messaging.types import PushEnvelope

from .queues import QUEUES, delay_queue, events_exchange, relay_queue, timeout_queue

if TYPE_CHECKING:
    from apps.matching.services.dispatcher import NotificationDispatcher
    from apps.matching.services.timeout_consumer import TimeoutConsumer
    from config.settings import MatchingSettings

# ─────────────────────────────────────────── Logging
log = structlog.get_logger(__name__).bind(comp="RabbitBroker")

PING_TIMEOUT_S = 3.0


class BrokerConnectionError(Exception):
    """Raised when broker connection fails after retries."""


def _masked(url: str) -> str:
    password = urlparse(url).password
    return url.replace(password, "***") if password else url


def build_broker(settings: MatchingSettings) -> RabbitBroker:
    log.info("Initialising FastStream broker configuration", rabbit_url=_masked(settings.rabbit_url))
    return RabbitBroker(settings.rabbit_url, logger=log)


# ─────────────────────────────────────────── Runtime
class BrokerRuntime:
    def __init__(self, settings: MatchingSettings, broker: RabbitBroker | None = None) -> None:
        self.settings = settings
        self.broker = broker or build_broker(settings)
        self.publisher: ReliableBrokerPublisher = ReliableBrokerPublisher(self.broker)
        self.prompt_queue = delay_queue(QUEUES.MATCH_TIMEOUTS_PROMPT_DELAY, settings.prompt_delay_s)
        self.final_queue = delay_queue(QUEUES.MATCH_TIMEOUTS_FINAL_DELAY, settings.final_delay_s)
        self.timeout_queue = timeout_queue()
        self.events_exchange = events_exchange()
        self._lock = asyncio.Lock()
        self._connected = False
        self._started = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------ connection
    async def _connect_with_retry(self) -> None:
        retries = self.settings.broker_connect_retries
        for attempt in range(1, retries + 1):
            try:
                await self.broker.connect()
                self._connected = True
                log.info("Broker connected successfully", attempt=attempt)
                return
            except (AMQPError, OSError) as e:
                log.warning(
                    "Broker connection failed, retrying...",
                    attempt=attempt,
                    max_retries=retries,
                    error=str(e),
                )
                if attempt == retries:
                    msg = f"Failed to connect after {retries} attempts: {e}"
                    raise BrokerConnectionError(msg) from e
                await asyncio.sleep(self.settings.broker_retry_delay_s * attempt)

    async def ensure_connected(self) -> None:
        """Connect and declare the topology, idempotently."""
        async with self._lock:
            if not self._connected:
                await self._connect_with_retry()
                await self.declare_topology()

    async def declare_topology(self) -> None:
        for queue in (self.timeout_queue, self.prompt_queue, self.final_queue):
            await self.broker.declare_queue(queue)
        await self.broker.declare_exchange(self.events_exchange)
        log.info(
            "Broker topology declared",
            prompt_ttl_s=self.settings.prompt_delay_s,
            final_ttl_s=self.settings.final_delay_s,
        )

    async def start(self) -> None:
        """Start every registered subscriber."""
        await self.ensure_connected()
        if not self._started:
            await self.broker.start()
            self._started = True

    async def ping(self) -> bool:
        return await self.broker.ping(timeout=PING_TIMEOUT_S)

    async def shutdown(self) -> None:
        log.info("Shutting down broker")
        async with self._lock:
            if self._connected:
                try:
                    await self.broker.close()
                    log.info("Broker shutdown complete")
                except Exception as e:
                    log.exception("Error during broker shutdown", error=str(e))
                finally:
                    self._connected = False
                    self._started = False

    # ------------------------------------------------------------------ subscribers
    def subscribe_timeouts(self, consumer: TimeoutConsumer) -> None:
        """Attach the expiration consumer to the dead-letter target queue."""
        requeue_delay_s = self.settings.consumer_requeue_delay_s

        @self.broker.subscriber(self.timeout_queue, retry=False)
        async def on_timeout_signal(body: Any, msg: RabbitMessage) -> None:
            await consumer.handle_delivery(body, msg, requeue_delay_s=requeue_delay_s)

        log.info("Timeout consumer subscribed", queue=self.timeout_queue.name)

    def subscribe_relay(self, dispatcher: NotificationDispatcher, instance_id: str) -> None:
        """Feed relayed push events into this process's local dispatcher."""
        queue = relay_queue(instance_id)

        @self.broker.subscriber(queue, self.events_exchange, retry=False)
        async def on_push_event(envelope: PushEnvelope) -> None:
            try:
                await dispatcher.deliver(envelope)
            except Exception:
                log.exception("Relayed push delivery failed", push_event=envelope.event, user_id=envelope.user_id)

        log.info("Push relay subscribed", queue=queue.name)
