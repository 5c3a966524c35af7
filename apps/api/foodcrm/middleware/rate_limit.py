from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from foodcrm.core.auth import decode_access_token
from foodcrm.core.config import get_settings
from foodcrm.core.context import get_correlation_id, resolve_client_ip

logger = logging.getLogger("foodcrm.ratelimit")

WINDOW_SECONDS = 60.0
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class SlidingWindowLimiter:
    """Counts mutations per (subject, route group) over the trailing window."""

    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = clock()

    def hit(self, key: tuple[str, str], limit: int) -> float | None:
        """Record one call; return seconds to wait when ``limit`` is already used up."""
        now = self._clock()
        horizon = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(horizon)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= horizon:
                hits.popleft()
            if len(hits) >= max(limit, 0):
                if not hits:
                    del self._hits[key]
                    return self.window_seconds
                return max(hits[0] + self.window_seconds - now, 0.0)
            hits.append(now)
            return None

    def _sweep(self, horizon: float) -> None:
        # subjects that went quiet for a whole window are forgotten
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= horizon]
        for key in stale:
            del self._hits[key]

    def tracked_keys(self) -> set[tuple[str, str]]:
        with self._lock:
            return set(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


_limiter = SlidingWindowLimiter()


def route_group(path: str) -> str:
    # /api/<group>/...
    segments = [segment for segment in path.split("/") if segment]
    return segments[1] if len(segments) > 1 else "api"


def rate_limit_subject(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer ") and header[7:].strip():
        try:
            return f"user:{decode_access_token(header[7:].strip())['sub']}"
        except HTTPException:
            pass
    return f"ip:{resolve_client_ip(request) or 'unknown'}"


def _too_many_requests(request: Request, wait_seconds: float) -> JSONResponse:
    correlation_id = (
        get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": None,
            "correlation_id": correlation_id,
        },
        headers={
            "Retry-After": str(max(1, math.ceil(wait_seconds))),
            "X-Correlation-Id": correlation_id,
        },
    )


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith("/api/")
        ):
            return await call_next(request)

        key = (rate_limit_subject(request), route_group(path))
        wait_seconds = _limiter.hit(key, settings.rate_limit_mutations_per_minute)
        if wait_seconds is None:
            return await call_next(request)

        logger.warning("rate_limit.exceeded", extra={"path": path, "method": request.method, "reason": "mutation_limit"})
        return _too_many_requests(request, wait_seconds)


def reset_rate_limiter() -> None:
    _limiter.clear()
