import asyncio

from apps.matching.services.retry_loop import MatchRetryLoop


class Attempts:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[str] = []

    async def __call__(self, user_id: str) -> bool:
        self.calls.append(user_id)
        result = self.results.pop(0) if self.results else False
        if isinstance(result, Exception):
            raise result
        return result


async def _drain(loop: MatchRetryLoop, user_id: str) -> None:
    for _ in range(200):
        if not loop.is_scheduled(user_id):
            return
        await asyncio.sleep(0.005)


async def test_retries_until_done():
    attempts = Attempts(False, False, True)
    loop = MatchRetryLoop(attempts, interval_s=0.001, max_age_s=5)

    loop.schedule("a")
    await _drain(loop, "a")

    assert attempts.calls == ["a", "a", "a"]
    assert loop.active == 0


async def test_failed_attempt_does_not_stop_the_loop():
    attempts = Attempts(RuntimeError("store hiccup"), True)
    loop = MatchRetryLoop(attempts, interval_s=0.001, max_age_s=5)

    loop.schedule("a")
    await _drain(loop, "a")

    assert attempts.calls == ["a", "a"]


async def test_cancel_stops_pending_attempts():
    attempts = Attempts()
    loop = MatchRetryLoop(attempts, interval_s=10, max_age_s=60)

    loop.schedule("a")
    loop.cancel("a")
    await asyncio.sleep(0)

    assert not loop.is_scheduled("a")
    assert attempts.calls == []


async def test_gives_up_after_max_age():
    attempts = Attempts()
    loop = MatchRetryLoop(attempts, interval_s=0.01, max_age_s=0.03)

    loop.schedule("a")
    await _drain(loop, "a")

    assert not loop.is_scheduled("a")
    assert 1 <= len(attempts.calls) <= 4


async def test_stop_cancels_everything():
    loop = MatchRetryLoop(Attempts(), interval_s=10, max_age_s=60)
    for uid in ("a", "b"):
        loop.schedule(uid)

    await loop.stop()

    assert loop.active == 0
