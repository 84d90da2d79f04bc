import asyncio

import pytest

from apps.matching.conf import MatchState, SignalOutcome
from apps.matching.datatype import Partition, QueueEntry
from apps.matching.errors import AlreadyQueuedError, InfrastructureError, ValidationError
from apps.matching.services.wiring import build_services

PYTHON_EASY = Partition("python", "Easy")


# ─── join ───────────────────────────────────────────────────────────────────────


async def test_first_join_waits(coordinator, services, publisher):
    outcome = await coordinator.join("a", "python", "easy")

    assert outcome.as_dict() == {"status": "pending", "matched": False, "position": 1, "queueSize": 1}
    assert (await coordinator.get_status("a")).state is MatchState.PENDING
    assert (await services.queue_store.get_entry("a")).difficulty == "Easy"
    assert len(publisher.signals_for("a", "final")) == 1


async def test_second_join_matches_and_pushes_same_data(coordinator, services, connect):
    sock_a, sock_b = connect("a"), connect("b")
    await coordinator.join("a", "python", "Easy")

    outcome = await coordinator.join("b", "python", "Easy")

    assert outcome.matched
    match_id = outcome.result.match_id
    assert outcome.as_dict() == {
        "status": "matched",
        "matched": True,
        "matchId": match_id,
        "matchedWith": "a",
        "sessionId": match_id,
    }
    assert await services.queue_store.size_of(PYTHON_EASY) == 0
    for user, other, sock in (("a", "b", sock_a), ("b", "a", sock_b)):
        status = await coordinator.get_status(user)
        (pushed,) = sock.events("match_found")
        assert status.state is MatchState.MATCHED
        assert status.match_id == pushed["matchId"] == match_id
        assert status.matched_with == pushed["matchedWith"] == other
        assert status.session_id == pushed["sessionId"]
        assert await services.scheduler.current_epoch(user) is None


async def test_different_difficulty_does_not_match(coordinator):
    await coordinator.join("a", "python", "Easy")
    outcome = await coordinator.join("b", "python", "Hard")

    assert not outcome.matched
    assert outcome.position == 1


async def test_double_join_is_rejected(coordinator, services):
    await coordinator.join("a", "python", "Easy")

    with pytest.raises(AlreadyQueuedError):
        await coordinator.join("a", "java", "Hard")

    assert await services.queue_store.count_user("a") == 1


async def test_concurrent_joins_of_one_user_queue_once(coordinator, services):
    results = await asyncio.gather(
        *(coordinator.join("a", "python", "Easy") for _ in range(5)),
        return_exceptions=True,
    )

    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert all(isinstance(r, AlreadyQueuedError) for r in results if isinstance(r, Exception))
    assert await services.queue_store.count_user("a") == 1


async def test_rejoin_after_match_is_allowed(coordinator):
    await coordinator.join("a", "python", "Easy")
    await coordinator.join("b", "python", "Easy")

    outcome = await coordinator.join("a", "python", "Easy")

    assert outcome.state is MatchState.PENDING


async def test_invalid_payload_never_reaches_queue(coordinator, services):
    invalid = [
        ("", "python", "Easy"),
        ("a b", "python", "Easy"),
        ("a", "", "Easy"),
        ("a", "py:thon", "Easy"),
        ("a", "python", "Extreme"),
    ]
    for args in invalid:
        with pytest.raises(ValidationError):
            await coordinator.join(*args)

    assert await services.queue_store.count_user("a") == 0
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND


async def test_join_rolls_back_when_broker_is_down(coordinator, services, publisher):
    publisher.fail = True

    with pytest.raises(InfrastructureError):
        await coordinator.join("a", "python", "Easy")

    assert await services.queue_store.get_entry("a") is None
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND
    assert await services.scheduler.current_epoch("a") is None

    publisher.fail = False
    assert (await coordinator.join("a", "python", "Easy")).state is MatchState.PENDING


async def test_many_concurrent_joiners_are_never_double_matched(coordinator, services):
    users = [f"u{i}" for i in range(20)]

    outcomes = await asyncio.gather(*(coordinator.join(uid, "python", "Easy") for uid in users))

    partners: dict[str, str] = {}
    for uid in users:
        status = await coordinator.get_status(uid)
        if status.state is MatchState.MATCHED:
            partners[uid] = status.matched_with
    assert all(partners[partners[uid]] == uid for uid in partners)
    waiting = await services.queue_store.list_all(PYTHON_EASY)
    assert len(partners) + len(waiting) == len(users)
    assert not {e.user_id for e in waiting} & partners.keys()
    assert sum(o.matched for o in outcomes) * 2 == len(partners)


# ─── cancel / requeue ───────────────────────────────────────────────────────────


async def test_cancel_is_idempotent(coordinator, services):
    await coordinator.join("a", "python", "Easy")

    assert await coordinator.cancel("a", "python")
    assert not await coordinator.cancel("a", "python")
    assert not await coordinator.cancel("never-joined")
    assert await services.queue_store.get_entry("a") is None
    assert await services.scheduler.current_epoch("a") is None


async def test_cancel_for_other_topic_keeps_entry(coordinator, services):
    await coordinator.join("a", "python", "Easy")

    assert not await coordinator.cancel("a", "java")
    assert await services.queue_store.get_entry("a") is not None
    assert (await coordinator.get_status("a")).state is MatchState.PENDING


async def test_cancel_after_match_does_not_undo_it(coordinator):
    await coordinator.join("a", "python", "Easy")
    await coordinator.join("b", "python", "Easy")

    await coordinator.cancel("a", "python")

    assert (await coordinator.get_status("a")).state is MatchState.MATCHED


async def test_requeue_goes_to_front_with_fresh_epoch(coordinator, services, publisher):
    await coordinator.join("x", "python", "Easy")
    await coordinator.join("y", "python", "Hard")

    outcome = await coordinator.requeue("a", "python", "Easy")

    assert outcome.position == 1
    assert outcome.queue_size == 2
    assert [e.user_id for e in await services.queue_store.list_all(PYTHON_EASY)] == ["a", "x"]
    assert (await coordinator.get_status("a")).state is MatchState.PENDING
    assert await services.scheduler.current_epoch("a") == publisher.signals_for("a", "final")[-1].epoch


async def test_requeue_of_waiting_user_moves_entry(coordinator, services):
    await coordinator.join("a", "java", "Easy")

    await coordinator.requeue("a", "python", "Easy")

    assert await services.queue_store.count_user("a") == 1
    assert (await services.queue_store.get_entry("a")).topic == "python"


# ─── sessions & retry path ─────────────────────────────────────────────────────


async def test_session_failure_requeues_both_at_front(settings, redis, publisher, failing_sessions):
    services = build_services(settings, redis=redis, publisher=publisher, sessions=failing_sessions)
    coordinator = services.coordinator
    await coordinator.join("a", "python", "Easy")
    await services.queue_store.enqueue(QueueEntry(user_id="z", topic="python", difficulty="Easy"))

    outcome = await coordinator.join("b", "python", "Easy")

    assert outcome.state is MatchState.PENDING
    assert [e.user_id for e in await services.queue_store.list_all(PYTHON_EASY)] == ["a", "b", "z"]
    for uid in ("a", "b"):
        assert (await coordinator.get_status(uid)).state is MatchState.PENDING
        assert await services.scheduler.current_epoch(uid) is not None


async def test_retry_match_pairs_users_that_missed_each_other(coordinator, services):
    for uid in ("a", "b"):
        await services.status_store.claim_pending(uid, "python", "Easy")
        await services.queue_store.enqueue(QueueEntry(user_id=uid, topic="python", difficulty="Easy"))

    assert await coordinator.retry_match("b")

    assert (await coordinator.get_status("a")).matched_with == "b"
    assert (await coordinator.get_status("b")).matched_with == "a"
    assert await services.queue_store.size_of(PYTHON_EASY) == 0


async def test_retry_match_stops_once_no_longer_pending(coordinator):
    assert await coordinator.retry_match("nobody")

    await coordinator.join("a", "python", "Easy")
    assert not await coordinator.retry_match("a")


async def test_retry_path_session_failure_keeps_oldest_in_front(settings, redis, publisher, failing_sessions):
    services = build_services(settings, redis=redis, publisher=publisher, sessions=failing_sessions)
    for uid, at in (("a", 1.0), ("b", 2.0), ("z", 3.0)):
        await services.status_store.claim_pending(uid, "python", "Easy")
        await services.queue_store.enqueue(QueueEntry(user_id=uid, topic="python", difficulty="Easy", enqueued_at=at))

    assert not await services.coordinator.retry_match("b")

    assert [e.user_id for e in await services.queue_store.list_all(PYTHON_EASY)] == ["a", "b", "z"]
    assert await services.finder.reserved_by("a") is None


async def test_session_failures_never_push_back_timeouts(settings_factory, redis, publisher, failing_sessions):
    settings = settings_factory(retry_interval_s=0.01)
    services = build_services(settings, redis=redis, publisher=publisher, sessions=failing_sessions)
    coordinator = services.coordinator
    await coordinator.join("a", "python", "Easy")
    await coordinator.join("b", "python", "Easy")
    await asyncio.sleep(0.2)

    assert len(publisher.signals_for("a", "final")) == 1
    assert len(publisher.signals_for("b", "final")) == 1
    (final_a,) = publisher.signals_for("a", "final")
    for _ in range(100):
        outcome = await services.consumer.process(final_a)
        if outcome is not SignalOutcome.DEFERRED:
            break
        await asyncio.sleep(0)
    await coordinator.stop()

    assert outcome is SignalOutcome.EXPIRED
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND
    assert await services.queue_store.get_entry("a") is None


async def test_failed_match_write_on_retry_path_requeues_both(coordinator, services, publisher, monkeypatch):
    for uid, at in (("a", 1.0), ("b", 2.0)):
        await services.status_store.claim_pending(uid, "python", "Easy")
        await services.queue_store.enqueue(QueueEntry(user_id=uid, topic="python", difficulty="Easy", enqueued_at=at))
    await services.scheduler.schedule_expiry("b", "python", "Easy")

    async def _store_down(result, *, session_id=None):
        msg = "store down"
        raise InfrastructureError(msg)

    monkeypatch.setattr(services.status_store, "mark_matched", _store_down)

    with pytest.raises(InfrastructureError):
        await coordinator.retry_match("b")

    assert [e.user_id for e in await services.queue_store.list_all(PYTHON_EASY)] == ["a", "b"]
    assert await services.finder.reserved_by("a") is None
    assert await services.finder.reserved_by("b") is None
    (final_b,) = publisher.signals_for("b", "final")
    assert await services.consumer.process(final_b) is SignalOutcome.EXPIRED
    assert await services.queue_store.get_entry("b") is None
    assert (await coordinator.get_status("b")).state is MatchState.NOT_FOUND


async def test_cancel_cannot_split_a_match_in_flight(settings, redis, publisher, held_sessions):
    services = build_services(settings, redis=redis, publisher=publisher, sessions=held_sessions)
    coordinator = services.coordinator
    await coordinator.join("a", "python", "Easy")
    (final_a,) = publisher.signals_for("a", "final")
    joining = asyncio.create_task(coordinator.join("b", "python", "Easy"))
    await held_sessions.entered.wait()

    assert not await coordinator.cancel("a", "python")
    with pytest.raises(AlreadyQueuedError):
        await coordinator.join("a", "python", "Easy")
    assert (await coordinator.get_status("a")).state is MatchState.PENDING
    assert await services.consumer.process(final_a) is SignalOutcome.DEFERRED

    held_sessions.release.set()
    outcome = await joining
    late = await coordinator.join("c", "python", "Easy")

    assert outcome.matched
    assert outcome.result.counterpart_of("b") == "a"
    assert late.state is MatchState.PENDING
    assert (await coordinator.get_status("a")).matched_with == "b"
    assert [e.user_id for e in await services.queue_store.list_all(PYTHON_EASY)] == ["c"]
    assert await services.consumer.process(final_a) is SignalOutcome.STALE


async def test_queue_snapshot_reports_size_and_position(coordinator):
    await coordinator.join("a", "python", "Medium")
    await coordinator.requeue("c", "python", "Medium")

    snapshot = await coordinator.queue_snapshot("python", "medium", "a")

    assert (snapshot.size, snapshot.position, snapshot.difficulty) == (2, 2, "Medium")


# ─── end to end ─────────────────────────────────────────────────────────────────


async def test_a_b_match_and_c_times_out(coordinator, services, publisher, connect):
    sockets = {uid: connect(uid) for uid in ("a", "b", "c")}

    await coordinator.join("a", "python", "Easy")
    await coordinator.join("b", "python", "Easy")
    await coordinator.join("c", "python", "Easy")

    for signal in publisher.signals_for("a") + publisher.signals_for("c", "prompt"):
        await services.consumer.process(signal)
    (final_c,) = publisher.signals_for("c", "final")
    assert await services.consumer.process(final_c) is SignalOutcome.EXPIRED

    assert sockets["a"].events("match_found")[0]["matchedWith"] == "b"
    assert sockets["b"].events("match_found")[0]["matchedWith"] == "a"
    assert sockets["a"].events("match_timeout") == []
    assert sockets["c"].events("match_found") == []
    assert len(sockets["c"].events("match_timeout")) == 1
    assert (await coordinator.get_status("a")).state is MatchState.MATCHED
    assert (await coordinator.get_status("c")).state is MatchState.NOT_FOUND
    assert await services.queue_store.size_of(PYTHON_EASY) == 0
