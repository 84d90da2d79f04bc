"""Matching constants, key layout and shared enums."""

from __future__ import annotations

from enum import Enum, StrEnum
from typing import Final

# ─── Redis key layout ──────────────────────────────────────────────────────────

KEY_PREFIXES: Final[dict[str, str]] = {
    "queue": "match:queue:",
    "entry": "match:entry:",
    "status": "match:status:",
    "epoch": "match:epoch:",
    "prompt": "match:prompt:",
    "reserve": "match:reserve:",
}

QUEUE_SCAN_PATTERN: Final[str] = f"{KEY_PREFIXES['queue']}*"
SCAN_COUNT: Final[int] = 100


def queue_key(topic: str, difficulty: str) -> str:
    return f"{KEY_PREFIXES['queue']}{topic}:{difficulty}"


def entry_key(user_id: str) -> str:
    return f"{KEY_PREFIXES['entry']}{user_id}"


def status_key(user_id: str) -> str:
    return f"{KEY_PREFIXES['status']}{user_id}"


def epoch_key(user_id: str) -> str:
    return f"{KEY_PREFIXES['epoch']}{user_id}"


def prompt_key(user_id: str) -> str:
    return f"{KEY_PREFIXES['prompt']}{user_id}"


def reserve_key(user_id: str) -> str:
    return f"{KEY_PREFIXES['reserve']}{user_id}"


# ─── Enums ──────────────────────────────────────────────────────────────────────


class Difficulty(StrEnum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @classmethod
    def _missing_(cls, value: object) -> Difficulty | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


class MatchState(StrEnum):
    PENDING = "pending"
    MATCHED = "matched"
    NOT_FOUND = "not_found"


class SignalType(StrEnum):
    PROMPT = "prompt"
    FINAL = "final"


class SignalOutcome(str, Enum):
    EXPIRED = "expired"
    PROMPTED = "prompted"
    STALE = "stale"
    DEFERRED = "deferred"
    REJECTED = "rejected"


# ─── Validation limits ─────────────────────────────────────────────────────────

USER_ID_PATTERN: Final[str] = r"^[A-Za-z0-9_-]+$"
USER_ID_MAX_LEN: Final[int] = 50
TOPIC_MAX_LEN: Final[int] = 64
