# common/messaging/reliable.py
# ============================================================================

"""
Broker publisher with full-jitter exponential-backoff retries.

Timeout signals and relayed pushes both go through here. Only transport
failures are retried; anything else (a payload the broker cannot encode,
a topology mismatch) fails on the first attempt.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from aio_pika.exceptions import AMQPError
from pydantic import BaseModel

if TYPE_CHECKING:
    from collections.abc import Iterator

log = structlog.get_logger(__name__).bind(comp="ReliablePublisher")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (AMQPError, ConnectionError, TimeoutError, OSError)


# EXCEPTIONS ------------------------------------------------------------------
class BrokerPublishError(RuntimeError):
    """Raised when a message could not be handed to the broker."""


# CONFIG ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_s: float = 0.5
    backoff_factor: float = 2.0
    max_backoff_s: float = 10.0

    def delays(self) -> Iterator[float]:
        """Full-jitter sleeps U(0, base) with base growing up to ``max_backoff_s``."""
        base = self.initial_delay_s
        for _ in range(self.max_retries):
            yield random.uniform(0.0, base)
            base = min(base * self.backoff_factor, self.max_backoff_s)


# PUBLISHER -------------------------------------------------------------------
class ReliableBrokerPublisher[T: BaseModel]:
    """
    Make ``broker.publish`` tolerant of short broker outages.

    The broker is duck-typed: anything with
    ``await broker.publish(message, queue=..., exchange=..., **kw)`` works.

    Example
    -------
        reliable = ReliableBrokerPublisher(RabbitBroker(url), max_retries=5)
        await reliable.publish(signal, queue=prompt_queue, persist=True)
    """

    def __init__(self, broker, **retry_kw) -> None:
        self._broker = broker
        self._cfg = RetryConfig(**retry_kw)
        self.published = 0
        self.failed = 0

    @staticmethod
    def _target(queue: Any, exchange: Any) -> str:
        name = getattr(exchange, "name", exchange) or getattr(queue, "name", queue)
        return str(name)

    async def publish(self, message: T, *, queue: Any = "", exchange: Any = None, **broker_kw) -> None:
        """
        Publish *message* to *queue* (routing key on the default exchange) or
        to *exchange*, which for a fanout ignores *queue*. Extra keyword
        arguments (``persist``, ``headers``...) go straight to the broker.
        """
        target = self._target(queue, exchange)
        delays = self._cfg.delays()
        attempt = 0

        while True:
            try:
                await self._broker.publish(message, queue=queue, exchange=exchange, **broker_kw)
            except asyncio.CancelledError:
                log.warning("publish cancelled by caller", target=target)
                raise
            except RETRYABLE_ERRORS as exc:
                sleep = next(delays, None)
                if sleep is None:
                    self.failed += 1
                    log.error("publish failed after max retries", target=target, retries=attempt, exc_info=exc)
                    msg = f"Failed to publish to '{target}' after {attempt} retries."
                    raise BrokerPublishError(msg) from exc
                attempt += 1
                log.warning(
                    "publish failed, retry scheduled",
                    target=target,
                    err=str(exc),
                    attempt=attempt,
                    next_delay_s=round(sleep, 2),
                )
                await asyncio.sleep(sleep)
            except Exception as exc:
                self.failed += 1
                log.error("publish rejected", target=target, err=str(exc))
                msg = f"Broker refused message for '{target}': {exc}"
                raise BrokerPublishError(msg) from exc
            else:
                self.published += 1
                if attempt:
                    log.info("publish succeeded after retries", target=target, retries=attempt)
                return
