"""
apps.matching.views
-------------------

Makes the endpoints directly importable via:

    from apps.matching.views import health_check, join_request, push_socket
"""

from __future__ import annotations

from .health import health_check
from .metrics import metrics_endpoint
from .push import push_socket
from .requests import (
    cancel_request,
    cleanup_queues,
    join_request,
    queue_status,
    request_status,
    requeue_request,
)

__all__: list[str] = [
    "cancel_request",
    "cleanup_queues",
    "health_check",
    "join_request",
    "metrics_endpoint",
    "push_socket",
    "queue_status",
    "request_status",
    "requeue_request",
]
