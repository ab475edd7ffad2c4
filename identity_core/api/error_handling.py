from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from identity_core.api.schemas import OAuthErrorBody
from identity_core.logging import get_logger
from identity_core.service.errors import OAuthErrorCode, OAuthFailure, ServiceError
from identity_core.storage.errors import ConstraintViolation

logger = get_logger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def oauth_error_response(failure: OAuthFailure) -> JSONResponse:
    """Render a protocol failure; the only place codes become HTTP statuses."""
    headers = dict(NO_STORE_HEADERS)
    if failure.code == OAuthErrorCode.INVALID_TOKEN:
        headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    elif failure.code == OAuthErrorCode.INVALID_CLIENT:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    body = OAuthErrorBody(error=failure.code.value, error_description=failure.description)
    return JSONResponse(
        status_code=failure.status_code,
        content=body.model_dump(),
        headers=headers,
    )


def _error_response(status_code: int, error: str, description: str | None = None) -> JSONResponse:
    body = OAuthErrorBody(error=error, error_description=description)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=dict(NO_STORE_HEADERS),
    )


_LOCATION_PREFIXES = {"query", "body", "header", "cookie", "path"}


def _field_name(loc) -> str:
    parts = list(loc)
    if parts and parts[0] in _LOCATION_PREFIXES:
        parts = parts[1:]
    return ".".join(str(part) for part in parts)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for request validation, service, storage and uncaught errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = sorted({_field_name(err.get("loc", ())) for err in exc.errors()} - {""})
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        description = (
            f"invalid or missing parameters: {', '.join(fields)}" if fields else "invalid request"
        )
        return oauth_error_response(OAuthFailure.invalid_request(description))

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.error_code == OAuthErrorCode.INVALID_TOKEN.value:
            return oauth_error_response(
                OAuthFailure(OAuthErrorCode.INVALID_TOKEN, exc.message)
            )
        if exc.status_code >= 500:
            return JSONResponse(status_code=500, content={"message": "internal server error"})
        return _error_response(exc.status_code, exc.error_code, exc.message)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.error(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return JSONResponse(status_code=500, content={"message": "internal server error"})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": message},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return JSONResponse(status_code=500, content={"message": "internal server error"})
