"""Map application, validation, database and framework errors to the JSON envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError, NoResultFound
from starlette.exceptions import HTTPException as StarletteHTTPException

from ums.api.deps import set_csrf_token
from ums.config import settings
from ums.core.errors import AppError, ErrorMessages, RateLimitExceededError

logger = logging.getLogger(__name__)


def _error_response(
    request: Request, status_code: int, body: dict, headers: dict[str, str] | None = None
) -> JSONResponse:
    """
    Build the error envelope, replaying what dependencies already put on the discarded response:
    rate-limit headers and the CSRF token that replaced the one the client sent.
    """
    merged = {**getattr(request.state, "rate_limit_headers", {}), **(headers or {})}
    response = JSONResponse(status_code=status_code, content=body, headers=merged or None)
    csrf_token = getattr(request.state, "csrf_token", None)
    if csrf_token:
        set_csrf_token(response, csrf_token)
    return response


def _field_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        # loc is ("body", "email") / ("query", "limit"); drop the source
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        field = ".".join(loc) or "body"
        msg = str(err.get("msg", "Invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.setdefault(field, []).append(msg)
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(request, exc.status_code, exc.to_dict(), headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.warning("%s %s -> 400: validation failed %s", request.method, request.url.path, list(errors))
        return _error_response(request, 400, {"success": False, "message": "Validation failed", "errors": errors})

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning("%s %s -> 409: %s", request.method, request.url.path, exc.orig)
        return _error_response(request, 409, {"success": False, "message": "Duplicate or conflicting record"})

    @app.exception_handler(NoResultFound)
    async def handle_no_result(request: Request, exc: NoResultFound):
        logger.warning("%s %s -> 404: %s", request.method, request.url.path, exc)
        return _error_response(request, 404, {"success": False, "message": "Resource not found"})

    @app.exception_handler(RateLimitExceeded)
    async def handle_global_rate_limit(request: Request, exc: RateLimitExceeded):
        logger.warning("Global rate limit exceeded ip=%s limit=%s", request.client.host if request.client else None, exc.detail)
        return _error_response(
            request,
            429,
            {"success": False, "message": "Too many requests from this IP, please try again later."},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.detail)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return _error_response(request, exc.status_code, {"success": False, "message": message}, exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        message = ErrorMessages.INTERNAL_SERVER_ERROR if settings.is_production else f"{type(exc).__name__}: {exc}"
        return _error_response(request, 500, {"success": False, "message": message})
