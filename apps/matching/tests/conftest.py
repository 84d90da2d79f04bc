from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fakeredis import FakeAsyncRedis

from apps.matching.errors import SessionUnavailableError
from apps.matching.services.wiring import build_services
from common.messaging.reliable import BrokerPublishError
from config.settings import MatchingSettings


class RecordingPublisher:
    """Stands in for ReliableBrokerPublisher; keeps every published message."""

    def __init__(self) -> None:
        self.published: list[dict[str, Any]] = []
        self.fail = False

    async def publish(self, message: Any, *, queue: Any = "", exchange: Any = None, **broker_kw: Any) -> None:
        if self.fail:
            msg = "broker down"
            raise BrokerPublishError(msg)
        self.published.append({"message": message, "queue": queue, "exchange": exchange, **broker_kw})

    def signals_for(self, user_id: str, signal_type: str | None = None) -> list[Any]:
        return [
            p["message"]
            for p in self.published
            if getattr(p["message"], "user_id", None) == user_id
            and (signal_type is None or p["message"].type == signal_type)
        ]


class RecordingHandle:
    """Connection handle that records frames, or fails every send when broken."""

    def __init__(self, *, broken: bool = False) -> None:
        self.frames: list[dict[str, Any]] = []
        self.broken = broken

    async def send_json(self, data: Any) -> None:
        if self.broken:
            msg = "socket closed"
            raise ConnectionResetError(msg)
        self.frames.append(data)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == name]


class FakeMessage:
    def __init__(self) -> None:
        self.settled: str | None = None

    async def ack(self) -> None:
        self.settled = "ack"

    async def reject(self) -> None:
        self.settled = "reject"

    async def nack(self) -> None:
        self.settled = "nack"


class FailingSessions:
    async def create(self, result: Any) -> str:
        msg = "collaboration service down"
        raise SessionUnavailableError(msg)

    async def aclose(self) -> None:
        return None


class HeldSessions:
    """Session factory that blocks inside ``create`` until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def create(self, result: Any) -> str:
        self.entered.set()
        await self.release.wait()
        return result.match_id

    async def aclose(self) -> None:
        return None


def make_settings(**overrides: Any) -> MatchingSettings:
    values: dict[str, Any] = {
        "environment": "test",
        "notify_via_broker": False,
        "retry_interval_s": None,
        "store_retry_delay_s": 0,
        "consumer_requeue_delay_s": 0,
    }
    values.update(overrides)
    return MatchingSettings(_env_file=None, **values)


@pytest.fixture
def settings() -> MatchingSettings:
    return make_settings()


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def services(settings, redis, publisher):
    return build_services(settings, redis=redis, publisher=publisher)


@pytest.fixture
def coordinator(services):
    return services.coordinator


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


@pytest.fixture
def connect(dispatcher):
    """Register a recording socket for a user and return it."""

    def _connect(user_id: str, **kw: Any) -> RecordingHandle:
        handle = RecordingHandle(**kw)
        dispatcher.register_connection(user_id, handle)
        return handle

    return _connect


@pytest.fixture
def make_handle():
    return RecordingHandle


@pytest.fixture
def message() -> FakeMessage:
    return FakeMessage()


@pytest.fixture
def failing_sessions() -> FailingSessions:
    return FailingSessions()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def held_sessions() -> HeldSessions:
    return HeldSessions()
