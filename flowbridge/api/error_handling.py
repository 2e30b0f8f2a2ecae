from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from flowbridge.api.schemas import Envelope, ErrorBody
from flowbridge.config import get_settings
from flowbridge.logging import get_logger, sanitize_error_message
from flowbridge.service.errors import ServiceError
from flowbridge.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
    502: "upstream_error",
    503: "unavailable",
}


def _where(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _envelope_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: str | None = None,
) -> JSONResponse:
    body = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
            message=message,
            details=details,
        ),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def _server_details(details: dict | None) -> dict | None:
    """Details of 5xx errors only leave the process in debug mode, sanitized."""
    if not details or not get_settings().debug:
        return None
    return {
        key: sanitize_error_message(value) if isinstance(value, str) else value
        for key, value in details.items()
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map every failure to the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, **_where(request))
        return _envelope_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        server_side = exc.status_code >= 500
        (logger.error if server_side else logger.warning)(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
            **_where(request),
        )
        details = _server_details(exc.detail) if server_side else (exc.detail or None)
        return _envelope_response(exc.status_code, exc.message, details, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.warning("request_validation_error", errors=problems, **_where(request))
        return _envelope_response(400, "Missing or invalid request fields", problems)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # Starlette raises these for unknown routes and wrong methods
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, **_where(request))
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        return _envelope_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception", error_type=type(exc).__name__, **_where(request)
        )
        return _envelope_response(
            500, "internal server error", _server_details({"error": str(exc)})
        )
