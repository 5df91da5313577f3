"""
Exception handlers for the check-in API.

Register these on a FastAPI app instance via `register_exception_handlers(app)`.
Every CheckInError becomes {"detail": ..., "error": <code>} with the status the
error class declares.
"""
import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from .core.env import is_local_env
from .errors import CheckInError, CollaboratorUnavailableError

logger = logging.getLogger("citycircle")

RETRY_AFTER_SECONDS = 5


async def checkin_error_handler(request: Request, exc: CheckInError):
    """Translate typed service errors into JSON responses."""
    request.state.error_code = exc.code
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    headers = None
    if isinstance(exc, CollaboratorUnavailableError):
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
        headers=headers,
    )


async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    # In production, don't leak internal error details to clients
    if is_local_env():
        error_response = {"detail": f"Internal server error: {exc}", "error": "internal"}
    else:
        error_response = {"detail": "Internal server error", "error": "internal"}

    return JSONResponse(status_code=500, content=error_response)


def register_exception_handlers(app):
    """Register all exception handlers on the given FastAPI app."""
    app.add_exception_handler(CheckInError, checkin_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
