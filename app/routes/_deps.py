from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from app.errors import REQ_VALIDATION_FAILED, ApiError
from app.schemas import error_envelope
from app.security import normalize_actor
from app.services import CoreServices


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def services_from_request(request: Request) -> CoreServices:
    return request.app.state.services


def actor_id_from_request(request: Request) -> str:
    actor_id = normalize_actor(request.headers.get("x-actor-id"))
    if not actor_id:
        raise ApiError.from_code(REQ_VALIDATION_FAILED, "x-actor-id header is required")
    return actor_id


def raise_for_failure(*, success: bool, error_code: str | None, error_message: str | None) -> None:
    if success:
        return
    raise ApiError.from_code(error_code or REQ_VALIDATION_FAILED, error_message or "request failed")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
