"""
Finds a counterpart for a candidate inside its (topic, difficulty) partition.

The scan-and-remove runs as one Lua script: the oldest waiting entry is
removed with LREM only if it is still present, so two concurrent finders can
never both claim the same counterpart. A candidate coming from the retry
path is already queued; the script then also requires that the candidate
still owns its entry and removes it together with the counterpart.

A successful claim leaves both users reserved under the new match id. While
reserved they can be neither cancelled nor matched again, and their final
timeout is deferred. The reservation ends when the match is recorded, when
``release`` is called, or when its TTL runs out.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog

from apps.matching.conf import KEY_PREFIXES, reserve_key
from apps.matching.datatype import MatchedPair, QueueEntry

from . import scripts
from .base_store import RedisRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger(__name__).bind(comp="MatchFinder")


def new_match_id() -> str:
    return uuid.uuid4().hex


class MatchFinder(RedisRepository):
    def __init__(self, client: Redis, *, reservation_ttl_s: int = 30, **retry_kw) -> None:
        super().__init__(client, **retry_kw)
        self._reservation_ttl_s = reservation_ttl_s
        self._take = self._script(scripts.TAKE_COUNTERPART)
        self._release = self._script(scripts.RELEASE)

    async def try_match(self, candidate: QueueEntry, *, already_queued: bool = False) -> MatchedPair | None:
        partition = candidate.partition
        match_id = new_match_id()
        reply = await self._retry_operation(
            self._take,
            keys=[partition.key],
            args=[
                candidate.user_id,
                KEY_PREFIXES["entry"],
                "1" if already_queued else "0",
                KEY_PREFIXES["status"],
                KEY_PREFIXES["reserve"],
                match_id,
                self._reservation_ttl_s,
            ],
        )
        if not reply:
            log.debug("no counterpart", user_id=candidate.user_id, partition=partition.key)
            return None

        user_id, topic, difficulty, enqueued_at = reply
        counterpart = QueueEntry(
            user_id=user_id,
            topic=topic,
            difficulty=difficulty,
            enqueued_at=float(enqueued_at or 0.0),
        )
        log.info(
            "counterpart found",
            user_id=candidate.user_id,
            matched_with=counterpart.user_id,
            match_id=match_id,
            partition=partition.key,
            waited_s=round(candidate.enqueued_at - counterpart.enqueued_at, 3),
        )
        return MatchedPair(
            match_id=match_id,
            candidate=candidate,
            counterpart=counterpart,
            candidate_queued=already_queued,
        )

    async def release(self, pair: MatchedPair) -> int:
        """Drop both reservations, but only while they still belong to this pair."""
        released = await self._retry_operation(
            self._release,
            keys=[reserve_key(pair.candidate.user_id), reserve_key(pair.counterpart.user_id)],
            args=[pair.match_id],
        )
        log.debug("reservation released", match_id=pair.match_id, released=released)
        return int(released)

    async def reserved_by(self, user_id: str) -> str | None:
        return await self._retry_operation(self._client.get, reserve_key(user_id))
