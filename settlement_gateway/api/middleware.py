"""Request context, access logging and HTTP latency metrics"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from settlement_gateway.domain.capabilities import GUEST
from settlement_gateway.infrastructure.observability.metrics import request_duration_histogram

REQUEST_ID_HEADER = "X-Request-ID"

# Probed by orchestrators every few seconds; not worth an access log line
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _route_template(request: Request) -> str:
    # Tracking tokens and ids stay out of label values and log fields
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach the caller's request id (or a fresh one) and the acting user to the request"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.actor_id = request.headers.get("X-Actor-Id") or GUEST.actor_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Observe latency per route and log one structured line per request"""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        route = _route_template(request)
        request_duration_histogram.labels(
            method=request.method,
            endpoint=route,
            status=response.status_code,
        ).observe(elapsed)

        if request.url.path not in QUIET_PATHS:
            logging.info(
                f"{request.method} {route} {response.status_code}",
                extra={
                    "request_id": getattr(request.state, "request_id", "unknown"),
                    "actor_id": getattr(request.state, "actor_id", GUEST.actor_id),
                    "status": response.status_code,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
        return response
