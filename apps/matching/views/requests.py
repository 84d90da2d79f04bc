# apps/matching/views/requests.py
"""
REST endpoints for match requests.

All handlers read their services from ``request.app.state.services`` and map
the error taxonomy to status codes in ``api_endpoint``.
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING

import structlog

from apps.matching.errors import AlreadyQueuedError, InfrastructureError, MatchingError, ValidationError
from common.views_utils import InvalidJSONError, OrjsonResponse, error_response, read_json

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

    from apps.matching.services.wiring import MatchingServices

log = structlog.get_logger(__name__).bind(comp="MatchingAPI")

RETRY_AFTER_S = "1"


def _services(request: Request) -> MatchingServices:
    return request.app.state.services


async def _read_object(request: Request) -> dict:
    data = await read_json(request)
    if not isinstance(data, dict):
        msg = "Request body must be a JSON object"
        raise ValidationError(msg)
    return data


def api_endpoint(handler: Callable[[Request], Awaitable[Response]]) -> Callable[[Request], Awaitable[Response]]:
    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except (ValidationError, InvalidJSONError) as exc:
            log.info("Rejected request", path=request.url.path, err=str(exc))
            return error_response(str(exc), status=400)
        except AlreadyQueuedError as exc:
            return error_response(str(exc), status=409, userId=exc.user_id)
        except InfrastructureError as exc:
            log.warning("Dependency unavailable", path=request.url.path, err=str(exc))
            return error_response(
                "Matching is temporarily unavailable, please retry.",
                status=503,
                headers={"Retry-After": RETRY_AFTER_S},
            )
        except MatchingError as exc:
            log.exception("Unhandled matching error", path=request.url.path)
            return error_response(str(exc), status=500)

    return wrapper


# --------------------------------------------------------------------------- requests
@api_endpoint
async def join_request(request: Request) -> Response:
    data = await _read_object(request)
    outcome = await _services(request).coordinator.join(
        data.get("userId"),
        data.get("topic"),
        data.get("difficulty"),
    )
    return OrjsonResponse(outcome.as_dict(), status_code=200 if outcome.matched else 202)


@api_endpoint
async def cancel_request(request: Request) -> Response:
    data = await _read_object(request)
    cancelled = await _services(request).coordinator.cancel(data.get("userId"), data.get("topic"))
    return OrjsonResponse({"cancelled": cancelled})


@api_endpoint
async def request_status(request: Request) -> Response:
    status = await _services(request).coordinator.get_status(request.path_params["user_id"])
    return OrjsonResponse(status.as_dict())


@api_endpoint
async def requeue_request(request: Request) -> Response:
    data = await _read_object(request)
    outcome = await _services(request).coordinator.requeue(
        data.get("userId"),
        data.get("topic"),
        data.get("difficulty"),
    )
    return OrjsonResponse(outcome.as_dict())


# --------------------------------------------------------------------------- queues
@api_endpoint
async def queue_status(request: Request) -> Response:
    snapshot = await _services(request).coordinator.queue_snapshot(
        request.path_params["topic"],
        request.path_params["difficulty"],
        request.query_params.get("userId"),
    )
    return OrjsonResponse(
        {
            "topic": snapshot.topic,
            "difficulty": snapshot.difficulty,
            "queueSize": snapshot.size,
            "position": snapshot.position,
        },
    )


@api_endpoint
async def cleanup_queues(request: Request) -> Response:
    """Development-only purge of every partition."""
    services = _services(request)
    if services.settings.is_production:
        return error_response("Cleanup is disabled in production.", status=403)
    deleted = await services.queue_store.purge()
    return OrjsonResponse({"deletedKeys": deleted})
