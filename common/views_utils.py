# common/views_utils.py
# ======================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import orjson
import structlog
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.requests import Request

log = structlog.get_logger(__name__).bind(component="ViewsUtils")


class InvalidJSONError(ValueError):
    """Request body is not valid JSON."""


# ------------------------------------------------------------------ orjson helpers
def _orjson_default(obj: Any) -> Any:
    """
    Custom serializer for types orjson doesn't handle.

    If the object implements `as_dict()` or `to_json()`, that is used;
    otherwise we raise TypeError so orjson can propagate an informative
    message.
    """
    for attr in ("as_dict", "to_json"):
        if hasattr(obj, attr):
            return getattr(obj, attr)()
    msg = f"{type(obj).__name__} is not JSON serialisable"
    raise TypeError(msg)


class OrjsonResponse(JSONResponse):
    """
    A high-performance JSON response using `orjson`.

    Data are encoded as UTF-8 bytes; `media_type` is `application/json`.
    """

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content, default=_orjson_default, option=orjson.OPT_NAIVE_UTC)


def error_response(detail: str, *, status: int, **extra: Any) -> OrjsonResponse:
    headers = extra.pop("headers", None)
    return OrjsonResponse({"detail": detail, **extra}, status_code=status, headers=headers)


# ------------------------------------------------------------------ request-parsing helpers
async def read_json(request: Request) -> Any:
    """Decode the body; an empty body reads as an empty object."""
    body = await request.body()
    if not body:
        return {}
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        msg = f"Malformed JSON body: {exc}"
        raise InvalidJSONError(msg) from exc

