# infrastructure/queues.py
from __future__ import annotations

from enum import Enum, auto
from typing import Final

from faststream.rabbit import ExchangeType, RabbitExchange, RabbitQueue


class StrAutoEnum(str, Enum):
    """Enum whose `auto()` values are *str* equal to the lowercase name."""

    def _generate_next_value_(self, start, count, last_values):
        return self.lower()


class Queue(StrAutoEnum):
    MATCH_TIMEOUTS = auto()
    MATCH_TIMEOUTS_PROMPT_DELAY = auto()
    MATCH_TIMEOUTS_FINAL_DELAY = auto()


class Exchange(StrAutoEnum):
    MATCH_EVENTS = auto()


QUEUES: Final = Queue
EXCHANGES: Final = Exchange


# ─────────────────────────── topology ───────────────────────────
def timeout_queue() -> RabbitQueue:
    return RabbitQueue(QUEUES.MATCH_TIMEOUTS.value, durable=True)


def delay_queue(name: Queue, ttl_s: float) -> RabbitQueue:
    """Holding queue whose expired messages dead-letter into the timeout queue."""
    return RabbitQueue(
        name.value,
        durable=True,
        arguments={
            "x-message-ttl": int(ttl_s * 1000),
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": QUEUES.MATCH_TIMEOUTS.value,
        },
    )


def events_exchange() -> RabbitExchange:
    return RabbitExchange(EXCHANGES.MATCH_EVENTS.value, type=ExchangeType.FANOUT, durable=True)


def relay_queue(instance_id: str) -> RabbitQueue:
    """Per-process queue bound to the fanout exchange; gone with its consumer."""
    return RabbitQueue(f"{EXCHANGES.MATCH_EVENTS.value}.{instance_id}", auto_delete=True)
