"""
Shared plumbing for Redis-backed matching stores.

Every store call goes through ``_retry_operation``: transient ``RedisError``s
are retried with a linear backoff and, once retries are exhausted, surface
as ``InfrastructureError`` so the HTTP layer can answer with a retryable 5xx.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Final

import structlog
from redis.exceptions import RedisError

from apps.matching.errors import InfrastructureError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from redis.asyncio import Redis
    from redis.commands.core import AsyncScript

log = structlog.get_logger(__name__)

MAX_RETRIES: Final[int] = 3
RETRY_DELAY: Final[float] = 0.1


class RedisRepository:
    def __init__(
        self,
        client: Redis,
        *,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._client = client
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    @property
    def client(self) -> Redis:
        return self._client

    def _script(self, source: str) -> AsyncScript:
        return self._client.register_script(source)

    async def _retry_operation(self, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute operation with retry logic."""
        last_error: RedisError | None = None

        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)
            except RedisError as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    log.warning(
                        "Redis operation failed, retrying",
                        attempt=attempt + 1,
                        error=str(e),
                    )
                    await asyncio.sleep(self._retry_delay * (attempt + 1))
                else:
                    log.exception(
                        "Redis operation failed after retries",
                        attempts=self._max_retries,
                        error=str(e),
                    )

        msg = f"Shared store unavailable after {self._max_retries} attempts: {last_error}"
        raise InfrastructureError(msg) from last_error
