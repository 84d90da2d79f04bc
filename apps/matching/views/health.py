# apps/matching/views/health.py

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from common.views_utils import OrjsonResponse

if TYPE_CHECKING:
    from starlette.requests import Request

    from apps.matching.services.wiring import MatchingServices

# --------------------------------------------------------------------------- helpers


async def _check_store(services: MatchingServices) -> dict[str, str | float]:
    start = time.perf_counter()
    try:
        await services.redis.ping()
        return {
            "status": "healthy",
            "response_time_ms": round((time.perf_counter() - start) * 1000, 2),
        }
    except RedisError as exc:
        return {"status": "unhealthy", "error": str(exc)}


async def _check_broker(services: MatchingServices) -> dict[str, str]:
    """Perform a real check against the message broker."""
    if services.broker is None:
        return {"status": "disabled"}
    try:
        if await services.broker.ping():
            return {"status": "healthy"}
        return {"status": "unhealthy", "error": "ping failed"}
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}


# --------------------------------------------------------------------------- view
async def health_check(request: Request) -> OrjsonResponse:
    """
    Comprehensive health endpoint.
    • `?check=basic`  → liveness-only.
    """
    start_view = time.perf_counter()
    services: MatchingServices = request.app.state.services
    base_payload = {
        "timestamp": datetime.now(UTC).isoformat(),
        "version": services.settings.app_version,
        "environment": services.settings.environment,
    }

    # very cheap liveness probe for Kubernetes/ECS
    if request.query_params.get("check") == "basic":
        return OrjsonResponse({"status": "ok", **base_payload})

    store_result, broker_result = await asyncio.gather(
        _check_store(services),
        _check_broker(services),
    )
    checks = {"store": store_result, "message_broker": broker_result}

    # unhealthy if any enabled check is not healthy
    overall_healthy = all(v["status"] == "healthy" for v in checks.values() if v.get("status") != "disabled")
    status_code = 200 if overall_healthy else 503

    response = {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "response_time_ms": round((time.perf_counter() - start_view) * 1000, 2),
        **base_payload,
    }
    return OrjsonResponse(response, status_code=status_code)
