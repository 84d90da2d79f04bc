"""
Orchestration entry point for join / cancel / requeue / status.

Lifecycle per user: ``idle → pending → {matched, not_found}``, with
``idle`` re-entered through an explicit requeue. Every cross-key step is an
atomic Redis operation, so any number of coordinators (one per web
instance) can run against the same store.
"""

from __future__ import annotations

from contextlib import suppress
from typing import TYPE_CHECKING

import structlog

from apps.matching.conf import MatchState
from apps.matching.datatype import JoinOutcome, MatchResult, Partition, QueueEntry, QueueSnapshot
from apps.matching.errors import (
    AlreadyQueuedError,
    InfrastructureError,
    MatchingError,
    NotFoundError,
    SessionUnavailableError,
)
from apps.matching.schemas import CancelRequest, JoinRequest, RequeueRequest, parse_request
from common.messaging.types import MatchFoundPayload, QueueUpdatePayload

from .retry_loop import MatchRetryLoop

if TYPE_CHECKING:
    from apps.matching.datatype import MatchedPair, MatchStatus

    from .dispatcher import Notifier
    from .match_finder import MatchFinder
    from .queue_store import QueueStore
    from .sessions import SessionFactory
    from .status_store import StatusStore
    from .timeout_scheduler import TimeoutScheduler

log = structlog.get_logger(__name__).bind(comp="MatchCoordinator")


class MatchCoordinator:
    def __init__(
        self,
        *,
        queue_store: QueueStore,
        status_store: StatusStore,
        finder: MatchFinder,
        scheduler: TimeoutScheduler,
        notifier: Notifier,
        sessions: SessionFactory,
        retry_interval_s: float | None = 10.0,
        retry_max_age_s: float = 120.0,
    ) -> None:
        self.queue_store = queue_store
        self.status_store = status_store
        self.finder = finder
        self.scheduler = scheduler
        self.notifier = notifier
        self.sessions = sessions
        self.retry_loop: MatchRetryLoop | None = None
        if retry_interval_s:
            self.retry_loop = MatchRetryLoop(self.retry_match, interval_s=retry_interval_s, max_age_s=retry_max_age_s)

    # ------------------------------------------------------------------ join
    async def join(self, user_id: str, topic: str, difficulty: str) -> JoinOutcome:
        """
        Register a match request and try to pair it immediately.

        Raises ``ValidationError`` for bad input, ``AlreadyQueuedError`` when
        the user is already waiting and ``InfrastructureError`` when the
        store or broker is unreachable. In the last case nothing the call
        wrote is left behind.
        """
        req = parse_request(JoinRequest, {"userId": user_id, "topic": topic, "difficulty": difficulty})
        candidate = QueueEntry(user_id=req.user_id, topic=req.topic, difficulty=req.difficulty.value)

        if not await self.status_store.claim_pending(candidate.user_id, candidate.topic, candidate.difficulty):
            raise AlreadyQueuedError(candidate.user_id)

        try:
            # a leftover entry from an interrupted lifecycle must not shadow this one
            await self.queue_store.remove_user(candidate.user_id)

            pair = await self.finder.try_match(candidate)
            if pair is not None:
                return await self._complete_match(pair)

            await self.queue_store.enqueue(candidate, replace=True)
            await self.scheduler.schedule_expiry(candidate.user_id, candidate.topic, candidate.difficulty)
        except InfrastructureError:
            await self._rollback_join(candidate)
            raise

        self._schedule_retry(candidate.user_id)
        return await self._pending_outcome(candidate)

    async def _rollback_join(self, candidate: QueueEntry) -> None:
        log.warning("join failed, rolling back", user_id=candidate.user_id)
        with suppress(MatchingError):
            await self.queue_store.remove(candidate.user_id, candidate.partition)
        with suppress(MatchingError):
            await self.status_store.clear_if_pending(candidate.user_id)
        with suppress(MatchingError):
            await self.scheduler.cancel(candidate.user_id)

    # ------------------------------------------------------------------ cancel
    async def cancel(self, user_id: str, topic: str | None = None) -> bool:
        """Withdraw a pending request. Idempotent; unknown users are a no-op."""
        req = parse_request(CancelRequest, {"userId": user_id, "topic": topic})
        removed = False
        try:
            entry = await self.queue_store.get_entry(req.user_id)
            if entry is not None:
                if req.topic is not None and entry.topic != req.topic:
                    msg = f"User {req.user_id!r} is not queued for topic {req.topic!r}"
                    raise NotFoundError(msg)
                removed = await self.queue_store.remove(req.user_id, entry.partition)
        except NotFoundError as exc:
            log.debug("cancel ignored", user_id=req.user_id, reason=str(exc))
            return False

        cleared = await self.status_store.clear_if_pending(req.user_id)
        if not (removed or cleared):
            # nothing waiting, or a match for this user is in flight
            log.debug("nothing to cancel", user_id=req.user_id)
            return False
        await self.scheduler.cancel(req.user_id)
        self._cancel_retry(req.user_id)

        if removed and entry is not None:
            await self._broadcast_queue_update(entry.partition)
        log.info("match request cancelled", user_id=req.user_id, removed=removed, cleared=cleared)
        return True

    # ------------------------------------------------------------------ requeue
    async def requeue(self, user_id: str, topic: str, difficulty: str) -> JoinOutcome:
        """Put the user back at the front of the partition with a fresh timeout."""
        req = parse_request(RequeueRequest, {"userId": user_id, "topic": topic, "difficulty": difficulty})
        entry = QueueEntry(user_id=req.user_id, topic=req.topic, difficulty=req.difficulty.value)
        await self._requeue_entry(entry)
        return await self._pending_outcome(entry)

    async def _requeue_entry(self, entry: QueueEntry) -> None:
        await self.status_store.set_pending(entry.user_id, entry.topic, entry.difficulty)
        await self.queue_store.enqueue(entry, front=True, replace=True)
        await self.scheduler.schedule_expiry(entry.user_id, entry.topic, entry.difficulty)
        self._schedule_retry(entry.user_id)
        log.info("user requeued", user_id=entry.user_id, partition=entry.partition.key)

    # ------------------------------------------------------------------ reads
    async def get_status(self, user_id: str) -> MatchStatus:
        return await self.status_store.get(user_id)

    async def queue_snapshot(self, topic: str, difficulty: str, user_id: str | None = None) -> QueueSnapshot:
        req = parse_request(JoinRequest, {"userId": user_id or "_", "topic": topic, "difficulty": difficulty})
        partition = Partition(req.topic, req.difficulty.value)
        size = await self.queue_store.size_of(partition)
        position = await self.queue_store.position_of(user_id, partition) if user_id else None
        return QueueSnapshot(topic=partition.topic, difficulty=partition.difficulty, size=size, position=position)

    # ------------------------------------------------------------------ retry path
    async def retry_match(self, user_id: str) -> bool:
        """
        One periodic attempt for an already-queued user.

        Returns True when no further attempts are needed.
        """
        status = await self.status_store.get(user_id)
        if status.state is not MatchState.PENDING:
            return True
        entry = await self.queue_store.get_entry(user_id)
        if entry is None:
            return False
        pair = await self.finder.try_match(entry, already_queued=True)
        if pair is None:
            return False
        outcome = await self._complete_match(pair)
        return outcome.matched

    # ------------------------------------------------------------------ completion
    async def _complete_match(self, pair: MatchedPair) -> JoinOutcome:
        first, second = sorted((pair.candidate, pair.counterpart), key=lambda e: e.enqueued_at)
        result = MatchResult(
            match_id=pair.match_id,
            user_a=first.user_id,
            user_b=second.user_id,
            topic=pair.candidate.topic,
            difficulty=pair.candidate.difficulty,
        )

        try:
            session_id = await self.sessions.create(result)
        except SessionUnavailableError:
            log.warning("no session for match, requeueing both", match_id=result.match_id)
            await self._restore(pair)
            return await self._pending_outcome(pair.candidate)

        try:
            recorded = await self.status_store.mark_matched(result, session_id=session_id)
        except InfrastructureError:
            log.warning("match write failed, requeueing both", match_id=result.match_id)
            with suppress(MatchingError):
                await self._put_back(pair, with_candidate=pair.candidate_queued)
            raise
        if not recorded:
            await self._restore(pair)
            return await self._pending_outcome(pair.candidate)

        for user_id in (result.user_a, result.user_b):
            self._cancel_retry(user_id)
            await self.notifier.notify_match_found(
                user_id,
                MatchFoundPayload(
                    match_id=result.match_id,
                    matched_with=result.counterpart_of(user_id),
                    topic=result.topic,
                    difficulty=result.difficulty,
                    matched_at=result.matched_at,
                    session_id=session_id,
                ),
            )
        await self._broadcast_queue_update(pair.candidate.partition)

        log.info("match completed", match_id=result.match_id, users=[result.user_a, result.user_b])
        return JoinOutcome(
            user_id=pair.candidate.user_id,
            state=MatchState.MATCHED,
            result=result,
            session_id=session_id,
        )

    async def _put_back(self, pair: MatchedPair, *, with_candidate: bool) -> None:
        """
        Return the users a failed match took out of the queue to its front and
        release their reservation.

        Entries keep their original epoch, so a timeout that fell due
        meanwhile still expires them.
        """
        entries = [pair.counterpart, pair.candidate] if with_candidate else [pair.counterpart]
        # newest first: each push goes to the head, so the oldest ends up in front
        for entry in sorted(entries, key=lambda e: e.enqueued_at, reverse=True):
            await self.queue_store.enqueue(entry, front=True, replace=True)
        await self.finder.release(pair)

    async def _restore(self, pair: MatchedPair) -> None:
        await self._put_back(pair, with_candidate=True)
        if not pair.candidate_queued:
            # a joiner matched on arrival has no timeout yet
            candidate = pair.candidate
            await self.scheduler.schedule_expiry(candidate.user_id, candidate.topic, candidate.difficulty)
            self._schedule_retry(candidate.user_id)

    # ------------------------------------------------------------------ helpers
    async def _pending_outcome(self, entry: QueueEntry) -> JoinOutcome:
        partition = entry.partition
        size = await self.queue_store.size_of(partition)
        position = await self.queue_store.position_of(entry.user_id, partition)
        await self._broadcast_queue_update(partition, size=size)
        return JoinOutcome(
            user_id=entry.user_id,
            state=MatchState.PENDING,
            position=position,
            queue_size=size,
        )

    async def _broadcast_queue_update(self, partition: Partition, *, size: int | None = None) -> None:
        if size is None:
            size = await self.queue_store.size_of(partition)
        await self.notifier.broadcast_queue_update(
            QueueUpdatePayload(topic=partition.topic, difficulty=partition.difficulty, queue_size=size),
        )

    def _schedule_retry(self, user_id: str) -> None:
        if self.retry_loop is not None:
            self.retry_loop.schedule(user_id)

    def _cancel_retry(self, user_id: str) -> None:
        if self.retry_loop is not None:
            self.retry_loop.cancel(user_id)

    async def stop(self) -> None:
        if self.retry_loop is not None:
            await self.retry_loop.stop()
