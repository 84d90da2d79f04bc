import orjson
import pytest

from apps.matching.services.dispatcher import NotificationDispatcher
from apps.matching.views.push import PushSession


@pytest.fixture
def hub():
    return NotificationDispatcher()


@pytest.fixture
def session(hub, make_handle):
    return PushSession(hub, make_handle())


def _frame(event, **data):
    return orjson.dumps({"event": event, "data": data}).decode()


async def test_authenticate_binds_user(session, hub):
    await session.handle_frame(_frame("authenticate", userId="a"))

    assert hub.is_connected("a")
    assert session._handle.events("authenticated") == [{"userId": "a"}]


async def test_invalid_user_id_is_refused(session, hub):
    await session.handle_frame(_frame("authenticate", userId="not valid!"))

    assert not hub.is_connected("not valid!")
    assert session._handle.events("error") == [{"message": "Invalid userId"}]


async def test_topic_requires_authentication(session, hub):
    await session.handle_frame(_frame("join_topic", topic="python"))
    await session.handle_frame(_frame("authenticate", userId="a"))
    await session.handle_frame(_frame("join_topic", topic="python"))

    assert session._handle.events("error") == [{"message": "Authenticate first"}]
    assert session._handle.events("topic_joined") == [{"topic": "python"}]
    assert hub.stats()["topic_rooms"] == {"python": 1}


async def test_garbage_frames_get_error_replies(session):
    await session.handle_frame("{oops")
    await session.handle_frame('["event"]')
    await session.handle_frame(_frame("dance"))
    await session.handle_frame(_frame("ping"))

    assert len(session._handle.events("error")) == 3
    assert session._handle.events("pong") == [{}]


async def test_close_releases_connection(session, hub):
    await session.handle_frame(_frame("authenticate", userId="a"))
    await session.handle_frame(_frame("join_topic", topic="python"))

    session.close()

    assert not hub.is_connected("a")
    assert hub.stats()["topic_rooms"] == {"python": 0}
