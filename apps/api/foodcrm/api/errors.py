from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request

from foodcrm.core.context import get_correlation_id


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id or None,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(asdict(payload)), headers=headers)


def failure(request: Request, exc: HTTPException, *, area: str, entity: str, operation: str) -> JSONResponse:
    """Turn a service HTTPException into the `<area>_<entity>_<operation>_failed` envelope."""
    detail = str(exc.detail)
    readable_entity = entity.replace("_", " ")
    if detail.startswith("Failed to"):
        message = detail
    else:
        message = f"Failed to {operation.replace('_', ' ')} {readable_entity}: {detail}"
    return error_response(
        request,
        status_code=exc.status_code,
        code=f"{area}_{entity}_{operation}_failed",
        message=message,
        details=exc.detail,
        headers=getattr(exc, "headers", None),
    )
