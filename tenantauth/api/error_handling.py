from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.logging import get_correlation_id, get_logger, sanitize_error_message
from tenantauth.service.errors import ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render the error envelope, reusing the request correlation id."""
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details or None,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    """Client errors are warnings; anything 5xx is an error."""
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _unpack_http_detail(detail: Any) -> tuple[Optional[str], Optional[str], Any]:
    """Return (code, message, details) from a routes._http_error payload."""
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        body = detail["error"]
        return body.get("code"), body.get("message", "http error"), body.get("details")
    if isinstance(detail, str):
        return None, detail, None
    return None, "http error", None


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, field=exc.field)
        details = {"field": exc.field} if exc.field else None
        return _error_response(
            409, sanitize_error_message(exc.message), details, code="conflict"
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
        return _error_response(exc.status_code, message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_failed", 422, error_count=len(problems))
        return _error_response(422, "invalid request", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code, message, details = _unpack_http_detail(exc.detail)
        # Unknown routes are routine; only log what a handler raised on purpose
        if code is not None or exc.status_code >= 500:
            _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
