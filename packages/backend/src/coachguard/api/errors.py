"""Exception handlers — the one place errors become HTTP responses.

Learn: Routes and services raise typed errors (coachguard.errors); nothing
below the API layer builds a response. Every error body has one shape:

    {"error": {"code": "<KIND>", "message": "<safe message>"}}

The full detail (exception text, context, upstream status) goes to the
server log only. Two translations worth knowing:

- Forbidden with a resource (ownership denial) → 404 NOT_FOUND, the same
  body a missing row gets, so a non-owner learns nothing.
- Any error on a request whose session resolution asked for token
  changes still gets those cookie changes; raising must not leave a
  dead token in the browser.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from coachguard.auth.transport import apply_resolution
from coachguard.errors import (
    AccessError,
    AuthRequired,
    Forbidden,
    NavigationRedirect,
    NotFound,
    RateLimited,
    ValidationFailed,
)

logger = structlog.get_logger()

_HTTP_KINDS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def error_body(kind: str, message: str, **extra) -> dict:
    return {"error": {"code": kind, "message": message, **extra}}


def error_response(exc: AccessError) -> JSONResponse:
    """Render an AccessError with its status, safe message and headers."""
    if isinstance(exc, Forbidden) and exc.resource:
        exc = NotFound()

    extra = {}
    if isinstance(exc, ValidationFailed) and exc.errors:
        extra["details"] = exc.errors

    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
        headers["X-RateLimit-Reset"] = str(exc.retry_after)
    elif isinstance(exc, AuthRequired):
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.kind, exc.safe_message, **extra),
        headers=headers,
    )


def _reapply_session_signals(request: Request, response: Response) -> None:
    resolution = getattr(request.state, "session_resolution", None)
    if resolution is not None:
        apply_resolution(response, resolution)


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all handlers to the app."""

    @app.exception_handler(AccessError)
    async def handle_access_error(request: Request, exc: AccessError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request.rejected",
            kind=exc.kind,
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
            **{k: str(v) for k, v in exc.context.items()},
        )
        response = error_response(exc)
        _reapply_session_signals(request, response)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            errors.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
        logger.info("request.validation_failed", path=request.url.path, errors=errors)
        return error_response(ValidationFailed(errors))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        kind = _HTTP_KINDS.get(exc.status_code, "HTTP_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else kind
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(kind, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(NavigationRedirect)
    async def handle_redirect(request: Request, exc: NavigationRedirect):
        logger.info("route_guard.redirect", path=request.url.path, location=exc.location)
        response = RedirectResponse(exc.location, status_code=307)
        _reapply_session_signals(request, response)
        return response

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(
            "request.unhandled_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content=error_body(AccessError.kind, AccessError.safe_message),
        )
