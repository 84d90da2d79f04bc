"""
Periodic re-attempts for users left waiting after a missed immediate match.

Two users joining the same partition at the same instant can both miss each
other. Each waiting user therefore gets a cancellable asyncio task that
re-runs the match attempt every ``interval_s`` until it is matched, no
longer pending, or older than ``max_age_s``.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = structlog.get_logger(__name__).bind(comp="MatchRetryLoop")


class MatchRetryLoop:
    """``retry_fn`` returns True once the user needs no further attempts."""

    def __init__(
        self,
        retry_fn: Callable[[str], Awaitable[bool]],
        *,
        interval_s: float = 10.0,
        max_age_s: float = 120.0,
    ) -> None:
        self._retry_fn = retry_fn
        self._interval_s = interval_s
        self._max_age_s = max_age_s
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    def is_scheduled(self, user_id: str) -> bool:
        return user_id in self._tasks

    def schedule(self, user_id: str) -> None:
        """(Re)start the retry timer for *user_id*."""
        self.cancel(user_id)
        task = asyncio.create_task(self._run(user_id), name=f"match-retry:{user_id}")
        self._tasks[user_id] = task
        task.add_done_callback(lambda t, uid=user_id: self._forget(uid, t))

    def cancel(self, user_id: str) -> None:
        task = self._tasks.pop(user_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        if tasks:
            log.info("retry timers stopped", count=len(tasks))

    def _forget(self, user_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(user_id) is task:
            del self._tasks[user_id]

    async def _run(self, user_id: str) -> None:
        started = time.monotonic()
        while time.monotonic() - started < self._max_age_s:
            await asyncio.sleep(self._interval_s)
            try:
                done = await self._retry_fn(user_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("match retry failed", user_id=user_id)
                continue
            if done:
                return
        log.debug("retry window elapsed", user_id=user_id, max_age_s=self._max_age_s)
