from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from foodcrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("foodcrm.request")

_QUIET_PATHS = {"/health", "/metrics"}


def _identity_fields(request: Request) -> dict[str, Any]:
    # filled in by get_current_user once the bearer token checks out
    context = getattr(request.state, "context", None)
    return {
        "user_id": getattr(context, "user_id", None),
        "session_id": getattr(context, "session_id", None),
        "ip_address": getattr(context, "ip_address", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    **_identity_fields(request),
                },
            )
            raise

        # the route is only resolved once the inner app has run
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        log = logger.debug if path in _QUIET_PATHS else logger.info
        log(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_identity_fields(request),
            },
        )
        return response
