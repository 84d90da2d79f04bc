from apps.matching.conf import MatchState, SignalOutcome, reserve_key
from apps.matching.errors import InfrastructureError


async def test_current_final_signal_evicts_and_notifies(services, coordinator, publisher, connect):
    handle = connect("a")
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")

    outcome = await services.consumer.process(final.model_dump_json())

    assert outcome is SignalOutcome.EXPIRED
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND
    assert await services.queue_store.get_entry("a") is None
    assert await services.queue_store.count_user("a") == 0
    (timeout,) = handle.events("match_timeout")
    assert timeout["userId"] == "a"
    assert timeout["topic"] == "python"


async def test_stale_epoch_after_requeue_is_ignored(services, coordinator, publisher):
    """Join then requeue: only the second lifecycle's signal may evict."""
    await coordinator.join("a", "python", "Easy")
    (stale,) = publisher.signals_for("a", "final")
    await coordinator.requeue("a", "python", "Easy")
    current = publisher.signals_for("a", "final")[-1]

    assert await services.consumer.process(stale) is SignalOutcome.STALE
    assert await services.queue_store.get_entry("a") is not None
    assert (await coordinator.get_status("a")).state is MatchState.PENDING

    assert await services.consumer.process(current) is SignalOutcome.EXPIRED
    assert await services.queue_store.get_entry("a") is None


async def test_duplicate_delivery_notifies_once(services, coordinator, publisher, connect):
    handle = connect("a")
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")

    assert await services.consumer.process(final) is SignalOutcome.EXPIRED
    assert await services.consumer.process(final) is SignalOutcome.STALE
    assert len(handle.events("match_timeout")) == 1


async def test_signal_for_matched_user_is_stale(services, coordinator, publisher):
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")
    await coordinator.join("b", "python", "Easy")

    assert await services.consumer.process(final) is SignalOutcome.STALE
    status = await coordinator.get_status("a")
    assert status.state is MatchState.MATCHED
    assert status.matched_with == "b"


async def test_signal_after_cancel_is_stale(services, coordinator, publisher):
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")
    await coordinator.cancel("a")

    assert await services.consumer.process(final) is SignalOutcome.STALE
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND


async def test_prompt_marks_nearing_timeout(services, coordinator, publisher):
    await coordinator.join("a", "python", "Easy")
    (prompt,) = publisher.signals_for("a", "prompt")

    assert await services.consumer.process(prompt.model_dump()) is SignalOutcome.PROMPTED
    status = await coordinator.get_status("a")
    assert status.state is MatchState.PENDING
    assert status.nearing_timeout
    assert status.as_dict() == {"status": "pending", "nearingTimeout": True}


async def test_malformed_signal_is_rejected(services):
    assert await services.consumer.process(b"{not json") is SignalOutcome.REJECTED
    assert await services.consumer.process({"type": "final"}) is SignalOutcome.REJECTED
    assert await services.consumer.process(42) is SignalOutcome.REJECTED
    assert services.consumer.metrics.rejected == 3


async def test_delivery_is_settled_explicitly(services, coordinator, publisher, message):
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")

    await services.consumer.handle_delivery(final.model_dump_json(), message)
    assert message.settled == "ack"

    poison = type(message)()
    await services.consumer.handle_delivery(b"garbage", poison)
    assert poison.settled == "reject"


async def test_store_outage_requeues_message(services, message, monkeypatch):
    async def _unavailable(raw):
        msg = "store down"
        raise InfrastructureError(msg)

    monkeypatch.setattr(services.consumer, "process", _unavailable)

    await services.consumer.handle_delivery(b"{}", message, requeue_delay_s=0)

    assert message.settled == "nack"
    assert services.consumer.metrics.failed == 1


async def test_final_signal_expires_user_without_entry(services, coordinator, publisher):
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")
    await services.queue_store.remove_user("a")

    assert await services.consumer.process(final) is SignalOutcome.EXPIRED
    assert (await coordinator.get_status("a")).state is MatchState.NOT_FOUND
    assert await services.scheduler.current_epoch("a") is None


async def test_final_signal_for_reserved_user_is_redelivered(services, coordinator, publisher, redis, message):
    await coordinator.join("a", "python", "Easy")
    (final,) = publisher.signals_for("a", "final")
    await redis.set(reserve_key("a"), "m1")

    await services.consumer.handle_delivery(final.model_dump_json(), message, requeue_delay_s=0)

    assert message.settled == "nack"
    assert services.consumer.metrics.deferred == 1
    assert await services.queue_store.get_entry("a") is not None
    assert (await coordinator.get_status("a")).state is MatchState.PENDING

    await redis.delete(reserve_key("a"))
    assert await services.consumer.process(final) is SignalOutcome.EXPIRED
