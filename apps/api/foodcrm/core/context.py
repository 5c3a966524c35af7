from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# set by CorrelationIdMiddleware before the route runs, so threadpool workers inherit it
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@dataclass
class RequestContext:
    """Per-request facts shared by middleware, auth dependencies and handlers.

    ``user_id`` and ``session_id`` stay empty until a bearer token is validated.
    """

    request_id: str
    correlation_id: str
    user_id: str | None
    session_id: str | None
    ip_address: str | None
    user_agent: str | None


def resolve_client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return None


def _new_context(request: Request) -> RequestContext:
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id() or ""
    return RequestContext(
        request_id=correlation_id,
        correlation_id=correlation_id,
        user_id=None,
        session_id=None,
        ip_address=resolve_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = _new_context(request)
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if isinstance(context, RequestContext):
        return context
    context = _new_context(request)
    request.state.context = context
    return context
