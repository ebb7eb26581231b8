from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from idbadge.api.schemas import Envelope, ErrorBody
from idbadge.logging import get_logger, get_request_id
from idbadge.service.errors import ServiceError
from idbadge.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_HTTP_STATUS_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
}


def error_envelope(
    status_code: int,
    message: str,
    *,
    code: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    """Render the ``{"status": "error", ...}`` envelope, tagged with the request id."""
    envelope = Envelope(status="error", error=ErrorBody(code=code, message=message, details=details))
    request_id = get_request_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _server_error() -> JSONResponse:
    return error_envelope(500, "An unexpected error occurred.", code="server_error")


async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
    # 4xx are expected outcomes of bad input, lockouts and throttles
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message_code=exc.message_code,
    )
    details = dict(exc.detail)
    if exc.message_code:
        details["messageCode"] = exc.message_code
    return error_envelope(exc.status_code, exc.message, code=exc.error_code, details=details or None)


async def _unhandled_condition(request: Request, exc: ConstraintViolation) -> JSONResponse:
    logger.error("store_condition_unhandled", path=request.url.path, message=exc.message, detail=exc.detail)
    return _server_error()


async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "reason": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.info("request_body_invalid", path=request.url.path, fields=[f["field"] for f in fields])
    return error_envelope(422, "The request body is not valid.", code="validation_error", details=fields)


async def _http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, "server_error" if exc.status_code >= 500 else "validation_error")
    message = exc.detail if isinstance(exc.detail, str) else "The request could not be processed."
    if exc.status_code >= 500:
        logger.error("http_exception", path=request.url.path, status_code=exc.status_code)
    return error_envelope(exc.status_code, message, code=code)


async def _uncaught(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return _server_error()


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error)
    app.add_exception_handler(ConstraintViolation, _unhandled_condition)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(HTTPException, _http_exception)
    app.add_exception_handler(Exception, _uncaught)
