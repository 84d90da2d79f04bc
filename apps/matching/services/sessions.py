"""
Boundary to the collaboration service that hosts the shared editing session.

A match is only reported as ``matched`` once a session id exists for it.
When the session cannot be created the coordinator puts both users back at
the front of their partition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Self

import httpx
import structlog

from apps.matching.errors import SessionUnavailableError

if TYPE_CHECKING:
    from apps.matching.datatype import MatchResult

log = structlog.get_logger(__name__).bind(comp="SessionFactory")

SESSIONS_PATH = "/api/v1/sessions"


class SessionFactory(Protocol):
    async def create(self, result: MatchResult) -> str: ...

    async def aclose(self) -> None: ...


class LocalSessionFactory:
    """No external service: the match id doubles as the session id."""

    async def create(self, result: MatchResult) -> str:
        return result.match_id

    async def aclose(self) -> None:
        return None


class HttpSessionFactory:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        session: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or httpx.AsyncClient(timeout=timeout_s)
        self._session_created = session is None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._session_created:
            await self._session.aclose()

    async def create(self, result: MatchResult) -> str:
        body = {
            "user1Id": result.user_a,
            "user2Id": result.user_b,
            "topic": result.topic,
            "difficulty": result.difficulty,
        }
        try:
            resp = await self._session.post(f"{self._base_url}{SESSIONS_PATH}", json=body)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("session creation failed", match_id=result.match_id, err=str(exc))
            msg = f"Collaboration session unavailable for match {result.match_id}"
            raise SessionUnavailableError(msg) from exc

        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            msg = f"Collaboration service returned no sessionId for match {result.match_id}"
            raise SessionUnavailableError(msg)

        log.info("session created", match_id=result.match_id, session_id=session_id)
        return str(session_id)
