"""HTTP middleware, exception handlers and the error raising helper."""

from __future__ import annotations

import re
import time
import uuid

import structlog
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from agentlink.models import ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_CODE_MAP = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "INVALID_STATE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "STORE_UNAVAILABLE",
}

_AGENT_PATH = re.compile(r"^/api/workspaces/(?P<workspace_id>[^/]+)/agents/(?P<agent_id>[^/]+)")

# Polled by supervisors; logged at debug to keep the log readable.
_QUIET_PATHS = frozenset({"/health"})


def _error_body(code: str, message: str, details=None) -> dict:
    return ErrorResponse(error=ErrorDetail(code=code, message=message, details=details)).model_dump()


async def request_logging_middleware(request: Request, call_next):
    """Bind request and agent identity to the log context and time the request.

    An incoming ``X-Request-ID`` is reused so a client can correlate its own
    log lines with the store's; otherwise one is generated. The id is echoed
    on the response.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    context = {"request_id": request_id, "method": request.method, "path": request.url.path}
    match = _AGENT_PATH.match(request.url.path)
    if match:
        context.update(match.groupdict())
    structlog.contextvars.bind_contextvars(**context)

    log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
    start_time = time.monotonic()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "Request failed",
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
        structlog.contextvars.clear_contextvars()
        raise

    log(
        "Request completed",
        status_code=response.status_code,
        duration_ms=round((time.monotonic() - start_time) * 1000, 2),
    )
    structlog.contextvars.clear_contextvars()
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    code = _CODE_MAP.get(exc.status_code, "INTERNAL_ERROR")
    return JSONResponse(status_code=exc.status_code, content=_error_body(code, str(exc.detail)))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=_error_body("VALIDATION_ERROR", "Invalid request", exc.errors()),
    )


async def store_exception_handler(request: Request, exc: SQLAlchemyError):
    """Database failures surface as 503 so clients treat the write as dropped."""
    logger.error("Conversation store failure", error=str(exc))
    return JSONResponse(
        status_code=503,
        content=_error_body("STORE_UNAVAILABLE", "Conversation store is unavailable"),
    )


def raise_http_error(code: str, message: str, status_code: int) -> None:
    """Raise an HTTPException with a structured error payload.

    Args:
        code: Stable error code string.
        message: Human-readable error message.
        status_code: HTTP status to return.
    """
    raise HTTPException(status_code=status_code, detail=_error_body(code, message))
