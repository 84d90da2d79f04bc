from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from common.views_utils import OrjsonResponse

if TYPE_CHECKING:
    from starlette.requests import Request

MODULE_START_TIME: float = time.time()


# --------------------------------------------------------------------------- endpoint
async def metrics_endpoint(request: Request) -> OrjsonResponse:
    """Process-local counters: connections, timeout outcomes, retry timers."""
    payload = {
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime_seconds": round(time.time() - MODULE_START_TIME, 1),
        **request.app.state.services.stats(),
    }
    return OrjsonResponse(payload)
