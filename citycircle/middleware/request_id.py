"""
Request ID middleware for correlation tracking

Takes the inbound X-Request-ID (from the mobile app or the gateway) or mints
one, and exposes it three ways:
- request.state.request_id for route handlers
- a context variable, stamped onto every log record by RequestIDLogFilter, so
  settlement and ledger logs can be tied back to the call that caused them
- the X-Request-ID response header
"""
import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Client-supplied ids end up in logs; anything else is replaced
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

_current_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Request id of the request being handled, if any."""
    return _current_request_id.get()


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to log records ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to generate and propagate request IDs"""

    async def dispatch(self, request: Request, call_next):
        inbound = request.headers.get(REQUEST_ID_HEADER)
        if inbound and _VALID_REQUEST_ID.match(inbound):
            request_id = inbound
        else:
            if inbound:
                logger.debug("Replacing malformed inbound request id")
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        token = _current_request_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _current_request_id.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
