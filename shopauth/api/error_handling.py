from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shopauth.api.schemas import Envelope, ErrorBody
from shopauth.logging import get_logger
from shopauth.service.errors import ServiceError
from shopauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
    500: "server_error",
}

# Rejections worth an audit trail with the caller's address
_AUTH_REJECTION_STATUSES = frozenset({401, 423})


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the error envelope every failing endpoint returns."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    if status_code in _AUTH_REJECTION_STATUSES:
        fields["client_ip"] = request.client.host if request.client else None
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _envelope_error(detail: Any) -> Optional[Tuple[str, Optional[str], Any]]:
    """Unpack ``(message, code, details)`` from a detail built by ``routes._http_error``."""
    if not isinstance(detail, dict):
        return None
    error = detail.get("error")
    if not isinstance(error, dict):
        return None
    return error.get("message", "http error"), error.get("code"), error.get("details")


def _field_path(loc: Sequence[Any]) -> str:
    # "body" prefixes every payload field; clients know fields by their own names
    return ".".join(str(part) for part in loc if part != "body")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        event = (
            "auth_rejected"
            if exc.status_code in _AUTH_REJECTION_STATUSES
            else "service_error"
        )
        _log_failure(
            event,
            request,
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": _field_path(err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        _log_failure("request_validation_failed", request, 400, errors=errors)
        return _error_response(400, "Validation failed", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        unpacked = _envelope_error(exc.detail)
        if unpacked is None:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code, details = None, None
        else:
            message, code, details = unpacked
        if exc.status_code >= 400:
            _log_failure("http_error", request, exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
