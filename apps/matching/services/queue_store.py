"""
Durable FIFO partitions of waiting match requests, backed by Redis.

Layout
------
* ``match:queue:{topic}:{difficulty}``  LIST of user ids, oldest at the head.
* ``match:entry:{user_id}``             HASH with the entry payload and the
  partition key it lives in. Its existence is the "already queued" lock.

Enqueue, remove and requeue are Lua scripts, so a user can never appear in
two partitions and a concurrent remove cannot lose somebody else's entry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from apps.matching.conf import KEY_PREFIXES, QUEUE_SCAN_PATTERN, SCAN_COUNT, entry_key
from apps.matching.datatype import Partition, QueueEntry

from . import scripts
from .base_store import RedisRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger(__name__).bind(comp="QueueStore")


class QueueStore(RedisRepository):
    def __init__(self, client: Redis, **retry_kw) -> None:
        super().__init__(client, **retry_kw)
        self._enqueue = self._script(scripts.ENQUEUE)
        self._remove = self._script(scripts.REMOVE)
        self._remove_user = self._script(scripts.REMOVE_USER)

    # ------------------------------------------------------------------ writes
    async def enqueue(self, entry: QueueEntry, *, front: bool = False, replace: bool = False) -> bool:
        """
        Insert *entry* at the tail (or head when *front*) of its partition.

        Returns False when the user already holds an entry anywhere and
        *replace* is not set; with *replace* the old entry is moved atomically.
        """
        partition = entry.partition
        added = await self._retry_operation(
            self._enqueue,
            keys=[partition.key, entry_key(entry.user_id)],
            args=[
                entry.user_id,
                entry.topic,
                entry.difficulty,
                repr(entry.enqueued_at),
                "l" if front else "r",
                "1" if replace else "0",
            ],
        )
        if not added:
            log.info("already queued", user_id=entry.user_id, partition=partition.key)
            return False
        log.info("enqueued", user_id=entry.user_id, partition=partition.key, front=front)
        return True

    async def remove(self, user_id: str, partition: Partition) -> bool:
        """Idempotent removal from one partition."""
        removed = await self._retry_operation(
            self._remove,
            keys=[partition.key, entry_key(user_id)],
            args=[user_id],
        )
        if removed:
            log.info("removed", user_id=user_id, partition=partition.key)
        return bool(removed)

    async def remove_user(self, user_id: str) -> bool:
        """Remove the user's entry from whichever partition holds it."""
        removed = await self._retry_operation(self._remove_user, keys=[entry_key(user_id)], args=[user_id])
        return bool(removed)

    async def sweep(self, user_id: str) -> int:
        """Defensive full scan: drop stray ids for *user_id* from every partition."""
        removed = 0
        async for key in self._client.scan_iter(match=QUEUE_SCAN_PATTERN, count=SCAN_COUNT):
            removed += await self._retry_operation(self._client.lrem, key, 0, user_id)
        if removed:
            log.warning("swept stray queue ids", user_id=user_id, removed=removed)
        return removed

    async def purge(self) -> int:
        """Delete every partition and entry. Development cleanup only."""
        deleted = 0
        for prefix in (KEY_PREFIXES["queue"], KEY_PREFIXES["entry"]):
            async for key in self._client.scan_iter(match=f"{prefix}*", count=SCAN_COUNT):
                deleted += await self._retry_operation(self._client.unlink, key)
        log.warning("queue store purged", deleted_keys=deleted)
        return deleted

    # ------------------------------------------------------------------ reads
    async def get_entry(self, user_id: str) -> QueueEntry | None:
        raw = await self._retry_operation(self._client.hgetall, entry_key(user_id))
        if not raw:
            return None
        return QueueEntry.from_hash(user_id, raw)

    async def list_all(self, partition: Partition) -> list[QueueEntry]:
        """Entries of *partition* in FIFO order; ids without a payload are skipped."""
        user_ids: list[str] = await self._retry_operation(self._client.lrange, partition.key, 0, -1)
        if not user_ids:
            return []

        async def _fetch_payloads() -> list[dict[str, str]]:
            async with self._client.pipeline(transaction=False) as pipe:
                for uid in user_ids:
                    pipe.hgetall(entry_key(uid))
                return await pipe.execute()

        payloads = await self._retry_operation(_fetch_payloads)

        return [
            QueueEntry.from_hash(uid, raw)
            for uid, raw in zip(user_ids, payloads, strict=True)
            if raw and raw.get("partition") == partition.key
        ]

    async def size_of(self, partition: Partition) -> int:
        return int(await self._retry_operation(self._client.llen, partition.key))

    async def position_of(self, user_id: str, partition: Partition) -> int | None:
        """1-based FIFO position, or None when the user is not in *partition*."""
        user_ids: list[str] = await self._retry_operation(self._client.lrange, partition.key, 0, -1)
        try:
            return user_ids.index(user_id) + 1
        except ValueError:
            return None

    async def count_user(self, user_id: str) -> int:
        """Occurrences of *user_id* across all partitions (0 or 1 when healthy)."""
        total = 0
        async for key in self._client.scan_iter(match=QUEUE_SCAN_PATTERN, count=SCAN_COUNT):
            user_ids = await self._retry_operation(self._client.lrange, key, 0, -1)
            total += user_ids.count(user_id)
        return total
