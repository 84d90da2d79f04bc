"""
Per-user ``MatchStatus`` records: the single source of truth read by both the
push path and the polling fallback.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from apps.matching.conf import MatchState, entry_key, epoch_key, prompt_key, reserve_key, status_key
from apps.matching.datatype import MatchResult, MatchStatus

from . import scripts
from .base_store import RedisRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger(__name__).bind(comp="StatusStore")


class StatusStore(RedisRepository):
    def __init__(self, client: Redis, *, ttl_s: int = 3600, **retry_kw) -> None:
        super().__init__(client, **retry_kw)
        self._ttl_s = ttl_s
        self._claim = self._script(scripts.CLAIM_PENDING)
        self._clear_if_pending = self._script(scripts.CLEAR_IF_PENDING)
        self._mark_matched = self._script(scripts.MARK_MATCHED)

    async def claim_pending(self, user_id: str, topic: str, difficulty: str) -> bool:
        """Compare-and-set to ``pending``; False when the user is already pending."""
        claimed = await self._retry_operation(
            self._claim,
            keys=[status_key(user_id)],
            args=[topic, difficulty, repr(time.time()), self._ttl_s],
        )
        return bool(claimed)

    async def set_pending(self, user_id: str, topic: str, difficulty: str) -> None:
        """Unconditional ``pending`` write, used by requeue."""
        key = status_key(user_id)

        async def _write() -> None:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key, prompt_key(user_id))
                pipe.hset(
                    key,
                    mapping={
                        "state": MatchState.PENDING.value,
                        "topic": topic,
                        "difficulty": difficulty,
                        "updated_at": repr(time.time()),
                    },
                )
                pipe.expire(key, self._ttl_s)
                await pipe.execute()

        await self._retry_operation(_write)

    async def mark_matched(self, result: MatchResult, *, session_id: str | None = None) -> bool:
        """
        Flip both participants to ``matched`` if they are still reserved for
        ``result.match_id``.

        Epoch and prompt markers and any queue entry written meanwhile are
        dropped in the same script, so in-flight expiration signals for
        either user are already stale. Returns False when a reservation has
        lapsed or been released; nothing is written then.
        """
        users = (result.user_a, result.user_b)
        recorded = await self._retry_operation(
            self._mark_matched,
            keys=[
                *(status_key(u) for u in users),
                *(reserve_key(u) for u in users),
                *(epoch_key(u) for u in users),
                *(prompt_key(u) for u in users),
                *(entry_key(u) for u in users),
            ],
            args=[
                result.match_id,
                result.topic,
                result.difficulty,
                *users,
                session_id or "",
                repr(result.matched_at),
                repr(time.time()),
                self._ttl_s,
            ],
        )
        if not recorded:
            log.warning("match reservation lost", match_id=result.match_id, users=list(users))
            return False
        log.info("match recorded", match_id=result.match_id, users=list(users))
        return True

    async def clear_if_pending(self, user_id: str) -> bool:
        """Delete a ``pending`` record unless the user is reserved by an in-flight match."""
        cleared = await self._retry_operation(
            self._clear_if_pending,
            keys=[status_key(user_id), reserve_key(user_id)],
        )
        return bool(cleared)

    async def clear(self, user_id: str) -> None:
        await self._retry_operation(self._client.delete, status_key(user_id), prompt_key(user_id))

    async def get(self, user_id: str) -> MatchStatus:
        """Pure read; a missing record reads as ``not_found``."""

        async def _read() -> list:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.hgetall(status_key(user_id))
                pipe.exists(prompt_key(user_id))
                return await pipe.execute()

        raw, prompted = await self._retry_operation(_read)
        if not raw or "state" not in raw:
            return MatchStatus.missing(user_id)
        return MatchStatus.from_hash(user_id, raw, nearing_timeout=bool(prompted))
