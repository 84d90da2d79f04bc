"""
Defines shared data types and Pydantic models for the messaging system.
Using these types ensures consistency between message publishers and consumers.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ─────────────────────────── broker signals ─────────────────────────────────
class TimeoutSignal(BaseModel):
    """Delayed expiration signal; dead-lettered into the timeout queue."""

    type: Literal["prompt", "final"] = Field(..., description="expiration stage")
    user_id: str = Field(..., min_length=1)
    epoch: str = Field(..., min_length=1, description="scheduling lifecycle token")
    topic: str
    difficulty: str
    issued_at: float = Field(default_factory=time.time, description="unix epoch")

    model_config = ConfigDict(frozen=True)


# ─────────────────────────── push payloads ──────────────────────────────────
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MatchFoundPayload(_CamelModel):
    match_id: str
    matched_with: str
    topic: str
    difficulty: str | None = None
    matched_at: float
    session_id: str | None = None


class MatchTimeoutPayload(_CamelModel):
    user_id: str
    topic: str
    difficulty: str | None = None
    timeout_at: float


class QueueUpdatePayload(_CamelModel):
    topic: str
    difficulty: str
    queue_size: int = Field(ge=0)


class PushEnvelope(BaseModel):
    """Relay frame fanned out to every web instance."""

    event: Literal["match_found", "match_timeout", "queue_update"]
    user_id: str | None = None
    topic: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
