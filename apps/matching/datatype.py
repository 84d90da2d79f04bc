"""Core data types for queue entries, statuses and match results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .conf import MatchState, queue_key

if TYPE_CHECKING:
    from collections.abc import Mapping


# ─── Queue ──────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class Partition:
    """Queue subdivision within which FIFO ordering and matching apply."""

    topic: str
    difficulty: str

    @property
    def key(self) -> str:
        return queue_key(self.topic, self.difficulty)


@dataclass(slots=True, frozen=True, kw_only=True)
class QueueEntry:
    user_id: str
    topic: str
    difficulty: str
    enqueued_at: float = field(default_factory=time.time)

    @property
    def partition(self) -> Partition:
        return Partition(self.topic, self.difficulty)

    @classmethod
    def from_hash(cls, user_id: str, raw: Mapping[str, str]) -> QueueEntry:
        return cls(
            user_id=user_id,
            topic=raw["topic"],
            difficulty=raw["difficulty"],
            enqueued_at=float(raw.get("enqueued_at") or 0.0),
        )


@dataclass(slots=True, frozen=True)
class MatchedPair:
    match_id: str
    candidate: QueueEntry
    counterpart: QueueEntry
    candidate_queued: bool = False


@dataclass(slots=True, frozen=True, kw_only=True)
class QueueSnapshot:
    topic: str
    difficulty: str
    size: int
    position: int | None = None


# ─── Match results & status ─────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True, kw_only=True)
class MatchResult:
    """Ephemeral record of one pairing; never stored as such."""

    match_id: str
    user_a: str
    user_b: str
    topic: str
    difficulty: str
    matched_at: float = field(default_factory=time.time)

    def counterpart_of(self, user_id: str) -> str:
        if user_id == self.user_a:
            return self.user_b
        if user_id == self.user_b:
            return self.user_a
        msg = f"User {user_id!r} is not part of match {self.match_id}"
        raise ValueError(msg)


@dataclass(slots=True, frozen=True, kw_only=True)
class MatchStatus:
    """Per-user status record shared by the push and polling paths."""

    user_id: str
    state: MatchState
    topic: str | None = None
    difficulty: str | None = None
    match_id: str | None = None
    matched_with: str | None = None
    session_id: str | None = None
    matched_at: float | None = None
    updated_at: float | None = None
    nearing_timeout: bool = False

    @classmethod
    def missing(cls, user_id: str) -> MatchStatus:
        return cls(user_id=user_id, state=MatchState.NOT_FOUND)

    @classmethod
    def from_hash(cls, user_id: str, raw: Mapping[str, str], *, nearing_timeout: bool = False) -> MatchStatus:
        matched_at = raw.get("matched_at")
        updated_at = raw.get("updated_at")
        return cls(
            user_id=user_id,
            state=MatchState(raw["state"]),
            topic=raw.get("topic") or None,
            difficulty=raw.get("difficulty") or None,
            match_id=raw.get("match_id") or None,
            matched_with=raw.get("matched_with") or None,
            session_id=raw.get("session_id") or None,
            matched_at=float(matched_at) if matched_at else None,
            updated_at=float(updated_at) if updated_at else None,
            nearing_timeout=nearing_timeout,
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.state.value}
        if self.state is MatchState.MATCHED:
            payload |= {
                "matchId": self.match_id,
                "matchedWith": self.matched_with,
                "sessionId": self.session_id,
            }
        if self.state is MatchState.PENDING:
            payload["nearingTimeout"] = self.nearing_timeout
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class JoinOutcome:
    """What a join resolved to: an immediate match or a pending entry."""

    user_id: str
    state: MatchState
    result: MatchResult | None = None
    session_id: str | None = None
    position: int | None = None
    queue_size: int | None = None

    @property
    def matched(self) -> bool:
        return self.state is MatchState.MATCHED

    def as_dict(self) -> dict[str, Any]:
        if self.matched and self.result is not None:
            return {
                "status": self.state.value,
                "matched": True,
                "matchId": self.result.match_id,
                "matchedWith": self.result.counterpart_of(self.user_id),
                "sessionId": self.session_id,
            }
        return {
            "status": self.state.value,
            "matched": False,
            "position": self.position,
            "queueSize": self.queue_size,
        }
